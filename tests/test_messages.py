from __future__ import annotations

import pytest
from lxml import etree

from emissor_nfe.config import NFE_NS
from emissor_nfe.services.messages import (
    CANCEL_EVENT,
    CCE_CONDICAO_USO,
    CCE_EVENT,
    access_key_from_payload,
    build_batch,
    build_batch_query,
    build_document_query,
    build_event,
    build_event_batch,
    build_service_status,
    event_id,
    protocol_document,
    strip_xml_declaration,
)
from tests.conftest import ACCESS_KEY, CNPJ, nfe_payload, prot_nfe, xml_text

N = f"{{{NFE_NS}}}"


def _event(**overrides) -> etree._Element:
    kwargs = {
        "event_type": CCE_EVENT,
        "access_key": ACCESS_KEY,
        "cnpj": CNPJ,
        "c_orgao": "35",
        "tp_amb": "2",
        "dh_evento": "2025-01-16T09:00:00-03:00",
        "sequence": 1,
        "correction_text": "Corrigir CEP do destinatário para 01310-100.",
    }
    kwargs.update(overrides)
    return build_event(**kwargs)


class TestBatch:
    def test_nfe_spliced_verbatim(self):
        payload = nfe_payload()
        batch = build_batch('<?xml version="1.0"?>' + payload, "250115103000123")
        assert payload in batch
        assert "<?xml" not in batch
        root = etree.fromstring(batch.encode())
        assert root.tag == f"{N}enviNFe"
        assert root.get("versao") == "4.00"
        assert xml_text(root, f"{N}idLote") == "250115103000123"
        assert xml_text(root, f"{N}indSinc") == "1"
        assert root[-1].tag == f"{N}NFe"

    def test_asynchronous(self):
        root = etree.fromstring(build_batch(nfe_payload(), "1", synchronous=False).encode())
        assert xml_text(root, f"{N}indSinc") == "0"


class TestQueries:
    def test_batch_query(self):
        root = etree.fromstring(build_batch_query("351000012345678", "2").encode())
        assert root.tag == f"{N}consReciNFe"
        assert xml_text(root, f"{N}nRec") == "351000012345678"

    def test_document_query(self):
        root = etree.fromstring(build_document_query(ACCESS_KEY, "1").encode())
        assert root.tag == f"{N}consSitNFe"
        assert xml_text(root, f"{N}tpAmb") == "1"
        assert xml_text(root, f"{N}xServ") == "CONSULTAR"
        assert xml_text(root, f"{N}chNFe") == ACCESS_KEY

    def test_service_status(self):
        root = etree.fromstring(build_service_status("35", "2").encode())
        assert [etree.QName(c).localname for c in root] == ["tpAmb", "cUF", "xServ"]
        assert xml_text(root, f"{N}xServ") == "STATUS"


class TestEventId:
    def test_length_and_layout(self):
        eid = event_id(CCE_EVENT, ACCESS_KEY, 7)
        assert len(eid) == 54
        assert eid == f"ID110110{ACCESS_KEY}07"

    def test_bad_key(self):
        with pytest.raises(ValueError, match="54 chars"):
            event_id(CCE_EVENT, "123", 1)


class TestBuildEvent:
    def test_correction_letter(self):
        evento = _event(sequence=2)
        inf = evento.find(f"{N}infEvento")
        assert inf.get("Id") == f"ID110110{ACCESS_KEY}02"
        assert xml_text(inf, f"{N}tpEvento") == "110110"
        assert xml_text(inf, f"{N}nSeqEvento") == "2"
        assert xml_text(inf, f"{N}CNPJ") == CNPJ
        det = inf.find(f"{N}detEvento")
        assert xml_text(det, f"{N}descEvento") == "Carta de Correcao"
        assert xml_text(det, f"{N}xCorrecao").startswith("Corrigir CEP")
        assert xml_text(det, f"{N}xCondUso") == CCE_CONDICAO_USO

    def test_cancellation(self):
        evento = _event(
            event_type=CANCEL_EVENT,
            correction_text=None,
            protocol="135250000123456",
            justification="Pedido cancelado pelo cliente antes do envio",
        )
        det = evento.find(f"{N}infEvento/{N}detEvento")
        assert xml_text(det, f"{N}descEvento") == "Cancelamento"
        assert xml_text(det, f"{N}nProt") == "135250000123456"
        assert det.find(f"{N}xCondUso") is None

    def test_correction_requires_text(self):
        with pytest.raises(ValueError):
            _event(correction_text="")

    def test_cancellation_requires_protocol(self):
        with pytest.raises(ValueError):
            _event(event_type=CANCEL_EVENT, correction_text=None, justification="x" * 20)

    def test_event_batch(self):
        batch = build_event_batch(_event(), "250116090000000")
        root = etree.fromstring(batch.encode())
        assert root.tag == f"{N}envEvento"
        assert xml_text(root, f"{N}idLote") == "250116090000000"
        assert root.find(f"{N}evento/{N}infEvento") is not None


class TestPayloadHelpers:
    def test_access_key_from_payload(self):
        assert access_key_from_payload(nfe_payload()) == ACCESS_KEY

    def test_access_key_prefixed_payload(self):
        xml = f'<n:NFe xmlns:n="{NFE_NS}"><n:infNFe versao="4.00" Id="NFe{ACCESS_KEY}"/></n:NFe>'
        assert access_key_from_payload(xml) == ACCESS_KEY

    def test_access_key_missing(self):
        assert access_key_from_payload("<NFe><infNFe Id='NFe123'/></NFe>") is None

    def test_protocol_document(self):
        proc = protocol_document(nfe_payload(), prot_nfe())
        root = etree.fromstring(proc.encode())
        assert root.tag == f"{N}nfeProc"
        assert [etree.QName(c).localname for c in root] == ["NFe", "protNFe"]

    def test_strip_xml_declaration(self):
        assert strip_xml_declaration('<?xml version="1.0" encoding="UTF-8"?>\n<a/>') == "<a/>"
        assert strip_xml_declaration("<a/>") == "<a/>"
