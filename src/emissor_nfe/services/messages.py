"""Inner NF-e messages carried inside the SOAP envelope.

The ``<NFe>`` document itself is built and signed elsewhere; these are the
small request documents around it (batch, queries, service status, events).
"""

from __future__ import annotations

import re

from lxml import etree

from emissor_nfe.config import EVENT_VERSION, NFE_NS, NFE_VERSION

NSMAP = {None: NFE_NS}

CCE_EVENT = "110110"
CANCEL_EVENT = "110111"

EVENT_DESCRIPTIONS = {
    CCE_EVENT: "Carta de Correcao",
    CANCEL_EVENT: "Cancelamento",
}

# Fixed legal text required by the CC-e layout (Ajuste SINIEF 07/05, art. 1, §1-A)
CCE_CONDICAO_USO = (
    "A Carta de Correcao e disciplinada pelo paragrafo 1o-A do art. 7o do Convenio S/N, "
    "de 15 de dezembro de 1970 e pode ser utilizada para regularizacao de erro ocorrido "
    "na emissao de documento fiscal, desde que o erro nao esteja relacionado com: "
    "I - as variaveis que determinam o valor do imposto tais como: base de calculo, "
    "aliquota, diferenca de preco, quantidade, valor da operacao ou da prestacao; "
    "II - a correcao de dados cadastrais que implique mudanca do remetente ou do "
    "destinatario; III - a data de emissao ou de saida."
)

_XML_DECL = re.compile(r"^\s*<\?xml[^>]*\?>\s*")


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    return el


def _tostring(el: etree._Element) -> str:
    return etree.tostring(el, encoding="unicode")


def strip_xml_declaration(xml: str) -> str:
    return _XML_DECL.sub("", xml, count=1)


def build_batch(nfe_xml: str, batch_id: str, synchronous: bool = True) -> str:
    """Wrap a signed ``<NFe>`` in an ``enviNFe`` batch.

    The NFe is spliced in as text so its signature bytes are untouched.
    """
    envi = etree.Element("enviNFe", nsmap=NSMAP)  # type: ignore[arg-type]
    envi.set("versao", NFE_VERSION)
    _sub(envi, "idLote", batch_id)
    _sub(envi, "indSinc", "1" if synchronous else "0")
    head = _tostring(envi)
    # lxml closes an element without children as "...</enviNFe>"
    closing = "</enviNFe>"
    return head[: -len(closing)] + strip_xml_declaration(nfe_xml) + closing


def build_batch_query(receipt_number: str, tp_amb: str) -> str:
    cons = etree.Element("consReciNFe", nsmap=NSMAP)  # type: ignore[arg-type]
    cons.set("versao", NFE_VERSION)
    _sub(cons, "tpAmb", tp_amb)
    _sub(cons, "nRec", receipt_number)
    return _tostring(cons)


def build_document_query(access_key: str, tp_amb: str) -> str:
    cons = etree.Element("consSitNFe", nsmap=NSMAP)  # type: ignore[arg-type]
    cons.set("versao", NFE_VERSION)
    _sub(cons, "tpAmb", tp_amb)
    _sub(cons, "xServ", "CONSULTAR")
    _sub(cons, "chNFe", access_key)
    return _tostring(cons)


def build_service_status(c_uf: str, tp_amb: str) -> str:
    cons = etree.Element("consStatServ", nsmap=NSMAP)  # type: ignore[arg-type]
    cons.set("versao", NFE_VERSION)
    _sub(cons, "tpAmb", tp_amb)
    _sub(cons, "cUF", c_uf)
    _sub(cons, "xServ", "STATUS")
    return _tostring(cons)


def event_id(event_type: str, access_key: str, sequence: int) -> str:
    """``ID`` + tpEvento(6) + chNFe(44) + nSeqEvento(2) = 54 chars."""
    eid = f"ID{event_type}{access_key}{sequence:02d}"
    if len(eid) != 54:
        raise ValueError(f"Event ID must be 54 chars, got {len(eid)}: {eid}")
    return eid


def build_event(
    *,
    event_type: str,
    access_key: str,
    cnpj: str,
    c_orgao: str,
    tp_amb: str,
    dh_evento: str,
    sequence: int,
    correction_text: str | None = None,
    protocol: str | None = None,
    justification: str | None = None,
) -> etree._Element:
    """Build the ``<evento>`` element (unsigned) for a CC-e or cancellation."""
    evento = etree.Element("evento", nsmap=NSMAP)  # type: ignore[arg-type]
    evento.set("versao", EVENT_VERSION)

    inf = _sub(evento, "infEvento")
    inf.set("Id", event_id(event_type, access_key, sequence))
    _sub(inf, "cOrgao", c_orgao)
    _sub(inf, "tpAmb", tp_amb)
    _sub(inf, "CNPJ", cnpj)
    _sub(inf, "chNFe", access_key)
    _sub(inf, "dhEvento", dh_evento)
    _sub(inf, "tpEvento", event_type)
    _sub(inf, "nSeqEvento", str(sequence))
    _sub(inf, "verEvento", EVENT_VERSION)

    det = _sub(inf, "detEvento")
    det.set("versao", EVENT_VERSION)
    _sub(det, "descEvento", EVENT_DESCRIPTIONS[event_type])
    if event_type == CCE_EVENT:
        if not correction_text:
            raise ValueError("CC-e requires correction_text")
        _sub(det, "xCorrecao", correction_text)
        _sub(det, "xCondUso", CCE_CONDICAO_USO)
    elif event_type == CANCEL_EVENT:
        if not protocol or not justification:
            raise ValueError("Cancelamento requires protocol and justification")
        _sub(det, "nProt", protocol)
        _sub(det, "xJust", justification)
    return evento


def build_event_batch(signed_event: etree._Element, batch_id: str) -> str:
    """Wrap one signed ``<evento>`` in an ``envEvento`` batch."""
    env = etree.Element("envEvento", nsmap=NSMAP)  # type: ignore[arg-type]
    env.set("versao", EVENT_VERSION)
    _sub(env, "idLote", batch_id)
    env.append(signed_event)
    return _tostring(env)


def access_key_from_payload(nfe_xml: str) -> str | None:
    """Read the access key from ``infNFe/@Id`` (``NFe`` + 44 digits)."""
    match = re.search(r"<(?:\w+:)?infNFe\b[^>]*\bId\s*=\s*[\"']NFe(\d{44})[\"']", nfe_xml)
    return match.group(1) if match else None


def protocol_document(nfe_xml: str, protocol_xml: str) -> str:
    """Join the signed NFe and its ``protNFe`` into the distributable ``nfeProc``."""
    return (
        f'<nfeProc xmlns="{NFE_NS}" versao="{NFE_VERSION}">'
        f"{strip_xml_declaration(nfe_xml)}{protocol_xml}</nfeProc>"
    )
