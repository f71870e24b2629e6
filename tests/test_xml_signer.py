from __future__ import annotations

from unittest.mock import patch

import pytest
from lxml import etree

from emissor_nfe.services.messages import CCE_EVENT, build_event
from emissor_nfe.services.xml_signer import C14N_1_0, sign_event
from tests.conftest import ACCESS_KEY, CNPJ

DSIG = "http://www.w3.org/2000/09/xmldsig#"


def _make_event(sequence: int = 1) -> etree._Element:
    return build_event(
        event_type=CCE_EVENT,
        access_key=ACCESS_KEY,
        cnpj=CNPJ,
        c_orgao="35",
        tp_amb="2",
        dh_evento="2025-01-16T09:00:00-03:00",
        sequence=sequence,
        correction_text="Corrigir CEP do destinatário para 01310-100.",
    )


class TestSignEvent:
    @patch("emissor_nfe.services.xml_signer._SefazSigner")
    def test_reference_uri_matches_id(self, mock_signer_cls, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        evento = _make_event(3)
        mock_signer_cls.return_value.sign.return_value = evento

        sign_event(evento, key_pem, cert_pem)
        _, kwargs = mock_signer_cls.return_value.sign.call_args
        assert kwargs["reference_uri"] == f"#ID{CCE_EVENT}{ACCESS_KEY}03"

    @patch("emissor_nfe.services.xml_signer._SefazSigner")
    def test_sefaz_algorithms(self, mock_signer_cls, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        evento = _make_event()
        mock_signer_cls.return_value.sign.return_value = evento

        sign_event(evento, key_pem, cert_pem)
        _, kwargs = mock_signer_cls.call_args
        assert kwargs["signature_algorithm"].name == "RSA_SHA1"
        assert kwargs["digest_algorithm"].name == "SHA1"
        assert kwargs["c14n_algorithm"] == C14N_1_0

    def test_real_signature_is_enveloped(self, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        signed = sign_event(_make_event(), key_pem, cert_pem)

        sig = signed.find(f"{{{DSIG}}}Signature")
        assert sig is not None
        method = sig.find(f"{{{DSIG}}}SignedInfo/{{{DSIG}}}SignatureMethod")
        assert method.get("Algorithm") == "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
        ref = sig.find(f"{{{DSIG}}}SignedInfo/{{{DSIG}}}Reference")
        assert ref.get("URI") == f"#ID{CCE_EVENT}{ACCESS_KEY}01"
        assert sig.find(f".//{{{DSIG}}}X509Certificate") is not None

    def test_raises_no_inf_evento(self, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        with pytest.raises(ValueError, match="infEvento element not found"):
            sign_event(etree.Element("evento"), key_pem, cert_pem)

    def test_raises_no_id(self, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        evento = etree.Element("evento")
        etree.SubElement(evento, "infEvento")
        with pytest.raises(ValueError, match="missing Id attribute"):
            sign_event(evento, key_pem, cert_pem)
