from __future__ import annotations

import itertools
import threading
import time
from datetime import UTC, datetime, timedelta
from http.client import RemoteDisconnected

import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree
from urllib3.exceptions import MaxRetryError, NewConnectionError, ProtocolError

from emissor_nfe.config import NFE_NS, SOAP12_NS, WSDL_NS
from emissor_nfe.models.document import DocumentStatus, FiscalDocument
from emissor_nfe.models.responses import EventResult
from emissor_nfe.models.tenant import Tenant
from emissor_nfe.services.fiscal_service import FiscalService
from emissor_nfe.services.transport import TransportResponse
from emissor_nfe.utils.access_key import generate_access_key
from emissor_nfe.utils.certificate import load_credential
from emissor_nfe.utils.store import DocumentStore

CNPJ = "12345678000199"
PASSWORD = "testpass"
PROTOCOL = "135250000123456"
ACCESS_KEY = generate_access_key("35", "2501", CNPJ, serie=1, n_nf=42, c_nf=12345678)
OTHER_KEY = generate_access_key("35", "2501", CNPJ, serie=1, n_nf=43, c_nf=87654321)


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath."""
    found = el.find(xpath)
    return found.text if found is not None else None


# --- NF-e / SOAP samples ---


def nfe_payload(access_key: str = ACCESS_KEY) -> str:
    return (
        f'<NFe xmlns="{NFE_NS}"><infNFe Id="NFe{access_key}" versao="4.00">'
        f"<ide><cUF>35</cUF><nNF>{int(access_key[25:34])}</nNF></ide>"
        "</infNFe></NFe>"
    )


def soap_response(inner: str, *, wrapped: bool = True, method: str = "nfeAutorizacaoLote") -> str:
    """SOAP 1.2 answer with *inner* in the Body, optionally inside nfeResultMsg."""
    if wrapped:
        inner = f'<nfeResultMsg xmlns="{WSDL_NS}/NFeAutorizacao4" method="{method}">{inner}</nfeResultMsg>'
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP12_NS}"><soap:Body>{inner}</soap:Body></soap:Envelope>'
    )


def prot_nfe(
    c_stat: str = "100",
    x_motivo: str = "Autorizado o uso da NF-e",
    *,
    access_key: str = ACCESS_KEY,
    protocol: str | None = PROTOCOL,
) -> str:
    n_prot = f"<nProt>{protocol}</nProt>" if protocol else ""
    return (
        f'<protNFe versao="4.00"><infProt Id="ID{protocol or "0"}">'
        "<tpAmb>2</tpAmb><verAplic>SP_NFE_PL009_V4</verAplic>"
        f"<chNFe>{access_key}</chNFe><dhRecbto>2025-01-15T10:30:00-03:00</dhRecbto>"
        f"{n_prot}<digVal>abc=</digVal><cStat>{c_stat}</cStat><xMotivo>{x_motivo}</xMotivo>"
        "</infProt></protNFe>"
    )


def ret_envi_nfe(
    c_stat: str = "100",
    x_motivo: str = "Autorizado o uso da NF-e",
    *,
    access_key: str = ACCESS_KEY,
    protocol: str | None = PROTOCOL,
    wrapped: bool = True,
) -> str:
    """Synchronous retEnviNFe: batch processed (104) with one protNFe."""
    inner = (
        f'<retEnviNFe xmlns="{NFE_NS}" versao="4.00">'
        "<tpAmb>2</tpAmb><verAplic>SP_NFE_PL009_V4</verAplic>"
        "<cStat>104</cStat><xMotivo>Lote processado</xMotivo><cUF>35</cUF>"
        "<dhRecbto>2025-01-15T10:30:00-03:00</dhRecbto>"
        f"{prot_nfe(c_stat, x_motivo, access_key=access_key, protocol=protocol)}"
        "</retEnviNFe>"
    )
    return soap_response(inner, wrapped=wrapped)


def ret_batch_only(c_stat: str, x_motivo: str, *, receipt: str | None = None, tag: str = "retEnviNFe") -> str:
    rec = f"<infRec><nRec>{receipt}</nRec><tMed>1</tMed></infRec>" if receipt else ""
    inner = (
        f'<{tag} xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>{x_motivo}</xMotivo>{rec}</{tag}>"
    )
    return soap_response(inner)


def ret_env_evento(
    c_stat: str = "135",
    x_motivo: str = "Evento registrado e vinculado a NF-e",
    *,
    event_type: str = "110110",
    sequence: int = 1,
    protocol: str = "135250000999999",
    wrapped: bool = True,
) -> str:
    inner = (
        f'<retEnvEvento xmlns="{NFE_NS}" versao="1.00"><idLote>1</idLote><tpAmb>2</tpAmb>'
        "<cOrgao>35</cOrgao><cStat>128</cStat><xMotivo>Lote de evento processado</xMotivo>"
        '<retEvento versao="1.00"><infEvento>'
        f"<tpAmb>2</tpAmb><cOrgao>35</cOrgao><cStat>{c_stat}</cStat><xMotivo>{x_motivo}</xMotivo>"
        f"<chNFe>{ACCESS_KEY}</chNFe><tpEvento>{event_type}</tpEvento><nSeqEvento>{sequence}</nSeqEvento>"
        f"<dhRegEvento>2025-01-16T09:00:00-03:00</dhRegEvento><nProt>{protocol}</nProt>"
        "</infEvento></retEvento></retEnvEvento>"
    )
    return soap_response(inner, wrapped=wrapped, method="nfeRecepcaoEvento")


# --- network failures, shaped the way requests raises them ---


def refused_error() -> requests.exceptions.ConnectionError:
    """Connection refused before anything was written."""
    reason = NewConnectionError(None, "Failed to establish a new connection: [Errno 111] Connection refused")
    return requests.exceptions.ConnectionError(MaxRetryError(None, "/ws/nfeautorizacao4.asmx", reason))


def aborted_error() -> requests.exceptions.ConnectionError:
    """Server dropped the connection after the request went out."""
    return requests.exceptions.ConnectionError(
        ProtocolError("Connection aborted.", RemoteDisconnected("Remote end closed connection without response"))
    )


# --- fakes ---


class FakeSender:
    """Stands in for transport.send; counts calls and replays canned responses."""

    def __init__(self, *responses: TransportResponse, gate: threading.Event | None = None) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []
        self.gate = gate
        self.entered = threading.Event()

    def __call__(self, endpoint_url, soap_action, envelope_xml, timeout=None, credential=None, policy=None, **kw):
        self.calls.append(
            {"url": endpoint_url, "action": soap_action, "envelope": envelope_xml, "policy": policy}
        )
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if not self.responses:
            raise AssertionError("unexpected SEFAZ call")
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


def ok(body: str) -> TransportResponse:
    return TransportResponse(success=True, status_code=200, body=body)


class FakeChannel:
    """EventChannel that registers every event unless told otherwise.

    Results in ``queued`` are answered first, one per call, before ``result``.
    """

    def __init__(self, result: EventResult | None = None, delay: float = 0.0) -> None:
        self.result = result
        self.queued: list[EventResult] = []
        self.delay = delay
        self.corrections: list[tuple[str, int, str]] = []
        self.cancellations: list[tuple[str, str]] = []

    def send_correction(self, document, sequence, text):
        self.corrections.append((document.id, sequence, text))
        if self.delay:
            time.sleep(self.delay)
        if self.queued:
            return self.queued.pop(0)
        if self.result is not None:
            return self.result
        return EventResult(
            status_code="135",
            reason="Evento registrado e vinculado a NF-e",
            protocol=f"1352500009{sequence:05d}",
            registered_at="2025-01-16T09:00:00-03:00",
            event_type="110110",
            sequence=sequence,
        )

    def send_cancellation(self, document, reason):
        self.cancellations.append((document.id, reason))
        if self.queued:
            return self.queued.pop(0)
        if self.result is not None:
            return self.result
        return EventResult(
            status_code="135",
            reason="Evento registrado e vinculado a NF-e",
            protocol="135250000777777",
            registered_at="2025-01-17T11:00:00-03:00",
            event_type="110111",
            sequence=1,
        )


# --- Certificate / PFX fixtures ---


def _certificate(key, common_name: str, not_before: datetime, not_after: datetime) -> x509.Certificate:
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


def _pfx(key, cert, password: str = PASSWORD) -> bytes:
    return pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.now(UTC)
    cert = _certificate(key, f"ACME SOFTWARE LTDA:{CNPJ}", now - timedelta(days=1), now + timedelta(days=365))
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture(scope="session")
def pfx_bytes(test_key_and_cert) -> bytes:
    return _pfx(*test_key_and_cert)


@pytest.fixture(scope="session")
def expired_pfx_bytes(test_key_and_cert) -> bytes:
    key, _ = test_key_and_cert
    now = datetime.now(UTC)
    cert = _certificate(key, "EXPIRED LTDA", now - timedelta(days=400), now - timedelta(days=35))
    return _pfx(key, cert)


@pytest.fixture(scope="session")
def pfx_without_key(test_key_and_cert) -> bytes:
    _, cert = test_key_and_cert
    return pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=None,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(PASSWORD.encode()),
    )


@pytest.fixture
def test_pfx(tmp_path, pfx_bytes):
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_bytes)
    return str(pfx_path), PASSWORD


@pytest.fixture(scope="session")
def credential(pfx_bytes):
    return load_credential(pfx_bytes, PASSWORD)


# --- engine fixtures ---


@pytest.fixture
def tenant(test_pfx) -> Tenant:
    pfx_path, _ = test_pfx
    return Tenant(
        id="acme",
        cnpj=CNPJ,
        razao_social="ACME SOFTWARE LTDA",
        uf="SP",
        ambiente="homologacao",
        serie=1,
        cert_path=pfx_path,
    )


@pytest.fixture
def store(tmp_path) -> DocumentStore:
    return DocumentStore(tmp_path / "data")


@pytest.fixture
def draft(store) -> FiscalDocument:
    return store.save(
        FiscalDocument(
            id="doc-1",
            tenant_id="acme",
            number=42,
            series=1,
            status=DocumentStatus.DRAFT,
            payload_xml=nfe_payload(),
        )
    )


@pytest.fixture
def authorized(store) -> FiscalDocument:
    return store.save(
        FiscalDocument(
            id="doc-2",
            tenant_id="acme",
            number=43,
            series=1,
            status=DocumentStatus.AUTHORIZED,
            payload_xml=nfe_payload(OTHER_KEY),
            access_key=OTHER_KEY,
            protocol="135250000555555",
            authorized_at="2025-01-15T10:30:00-03:00",
        )
    )


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender(ok(ret_envi_nfe()))


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def numbers():
    counter = itertools.count(100)
    return lambda tenant_id, serie, env: next(counter)


@pytest.fixture
def service(monkeypatch, tmp_path, store, tenant, sender, channel, numbers) -> FiscalService:
    monkeypatch.setenv("CERT_PFX_PASSWORD", PASSWORD)
    return FiscalService(
        store,
        tenants=lambda tenant_id: tenant,
        sender=sender,
        channels=lambda t: channel,
        allocate_number=numbers,
        issued_dir=lambda env: tmp_path / "issued" / env,
        guard_timeout=10,
    )
