from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from emissor_nfe.services.exceptions import (
    CertificateExpired,
    InvalidCertificateBundle,
    NoCertificateFound,
    NoPrivateKeyFound,
    WrongPassword,
)

# ICP-Brasil OtherName carrying the company CNPJ
ICP_BRASIL_CNPJ_OID = x509.ObjectIdentifier("2.16.76.1.3.3")


@dataclass(frozen=True)
class ExtractedCertificate:
    certificate_pem: str = field(repr=False)
    private_key_pem: str = field(repr=False)
    not_after: datetime
    subject: str
    cnpj: str | None = None


@dataclass(frozen=True)
class TransportCredential:
    """Decoded signing/mTLS material for one tenant. Lives in memory only."""

    pfx_data: bytes = field(repr=False)
    password: str = field(repr=False)
    certificate_pem: str = field(repr=False)
    private_key_pem: str = field(repr=False)
    not_after: datetime
    subject: str
    cnpj: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.not_after <= (now or datetime.now(UTC))


def _looks_like_pfx(data: bytes) -> bool:
    """Check the outer DER shape: SEQUENCE { INTEGER 3, ... }."""
    if len(data) < 8 or data[0] != 0x30:
        return False
    idx = 2
    length_byte = data[1]
    if length_byte & 0x80:
        idx += length_byte & 0x7F
    return data[idx : idx + 3] == b"\x02\x01\x03"


def _extract_cnpj(certificate: x509.Certificate) -> str | None:
    """Return the CNPJ from the ICP-Brasil SAN OtherName, else from the subject CN."""
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        san = None
    if san is not None:
        for other in san.value.get_values_for_type(x509.OtherName):
            if other.type_id == ICP_BRASIL_CNPJ_OID:
                match = re.search(rb"\d{14}", other.value)
                if match:
                    return match.group().decode()

    for attr in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        match = re.search(r"\d{14}", str(attr.value))
        if match:
            return match.group()
    return None


def _load_bundle(pfx_data: bytes, password: str):
    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            pfx_data, password.encode()
        )
    except ValueError:
        if _looks_like_pfx(pfx_data):
            raise WrongPassword("Senha incorreta para o certificado") from None
        raise InvalidCertificateBundle("Arquivo não é um certificado PKCS#12 válido") from None

    if certificate is None:
        raise NoCertificateFound("Nenhum certificado encontrado no arquivo .pfx")
    if private_key is None:
        raise NoPrivateKeyFound("Nenhuma chave privada encontrada no arquivo .pfx")
    return private_key, certificate


def _decode_pfx(pfx_base64: str) -> bytes:
    try:
        data = base64.b64decode(pfx_base64, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidCertificateBundle("Certificado não está em base64 válido") from None
    if not data:
        raise InvalidCertificateBundle("Certificado vazio")
    return data


def _to_pem(private_key, certificate: x509.Certificate) -> tuple[str, str]:
    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    cert_pem = certificate.public_bytes(Encoding.PEM)
    return cert_pem.decode(), key_pem.decode()


def extract(pfx_base64: str, password: str) -> ExtractedCertificate:
    """Decode a base64 PKCS#12 bundle into PEM certificate and private key.

    Raises InvalidCertificateBundle, WrongPassword, NoCertificateFound or
    NoPrivateKeyFound. The returned PEMs must never be logged or persisted.
    """
    pfx_data = _decode_pfx(pfx_base64)
    private_key, certificate = _load_bundle(pfx_data, password)
    cert_pem, key_pem = _to_pem(private_key, certificate)
    return ExtractedCertificate(
        certificate_pem=cert_pem,
        private_key_pem=key_pem,
        not_after=certificate.not_valid_after_utc,
        subject=certificate.subject.rfc4514_string(),
        cnpj=_extract_cnpj(certificate),
    )


def load_credential(
    pfx_data: bytes,
    password: str,
    *,
    now: datetime | None = None,
) -> TransportCredential:
    """Build a TransportCredential from raw PKCS#12 bytes.

    Fails fast with CertificateExpired so no network call is attempted with
    a certificate SEFAZ would refuse.
    """
    extracted = extract(base64.b64encode(pfx_data).decode("ascii"), password)
    now = now or datetime.now(UTC)
    if extracted.not_after <= now:
        raise CertificateExpired(
            f"Certificado expirado em {extracted.not_after:%d/%m/%Y}",
            not_after=extracted.not_after,
        )
    return TransportCredential(
        pfx_data=pfx_data,
        password=password,
        certificate_pem=extracted.certificate_pem,
        private_key_pem=extracted.private_key_pem,
        not_after=extracted.not_after,
        subject=extracted.subject,
        cnpj=extracted.cnpj,
    )


def certificate_info(pfx_data: bytes, password: str) -> dict:
    """Validate certificate and return info."""
    _, certificate = _load_bundle(pfx_data, password)

    now = datetime.now(UTC)
    not_after = certificate.not_valid_after_utc
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": not_after,
        "valid": certificate.not_valid_before_utc <= now <= not_after,
        "serial": certificate.serial_number,
        "cnpj": _extract_cnpj(certificate),
        "days_until_expiry": (not_after - now).days,
    }
