from __future__ import annotations

from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from emissor_nfe.config import NFE_NS

C14N_1_0 = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"


class _SefazSigner(XMLSigner):
    """XMLSigner that accepts the SHA1 algorithms the NF-e 4.00 layout mandates."""

    def check_deprecated_methods(self) -> None:
        pass


def sign_event(evento: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign the ``<evento>`` element with an enveloped RSA-SHA1 signature.

    Canonicalization is C14N 1.0 and the reference is the ``infEvento`` Id.
    Returns the signed ``<evento>`` element.
    """
    inf_evento = evento.find(f"{{{NFE_NS}}}infEvento")
    if inf_evento is None:
        inf_evento = evento.find("infEvento")
    if inf_evento is None:
        raise ValueError("infEvento element not found in evento")

    event_id = inf_evento.get("Id")
    if not event_id:
        raise ValueError("infEvento is missing Id attribute")

    signer = _SefazSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA1,
        digest_algorithm=DigestAlgorithm.SHA1,
        c14n_algorithm=C14N_1_0,
    )

    return signer.sign(
        evento,
        key=key_pem,
        cert=cert_pem.decode(),
        reference_uri=f"#{event_id}",
    )
