"""SOAP 1.2 envelope codec for the NF-e 4.00 web services.

Building is string assembly around a fixed skeleton: the inner document is
already final (signed) and must reach SEFAZ byte for byte. Parsing is
tolerant: SEFAZ answers either with the ``ret*`` element straight in the
SOAP Body or wrapped one level down in ``nfeResultMsg``, with or without
prefixes, and with inconsistent casing across authorizers.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from lxml import etree

from emissor_nfe.config import SOAP12_NS, WSDL_NS
from emissor_nfe.models.responses import AutorizacaoResult, EventResult, StatusServicoResult
from emissor_nfe.services.messages import strip_xml_declaration

logger = logging.getLogger(__name__)


class Operation(enum.Enum):
    SUBMIT_BATCH = "submit_batch"
    QUERY_BATCH = "query_batch"
    QUERY_DOCUMENT = "query_document"
    SERVICE_STATUS = "service_status"
    SUBMIT_EVENT = "submit_event"


@dataclass(frozen=True)
class OperationSpec:
    service: str
    namespace: str
    method: str

    @property
    def soap_action(self) -> str:
        return f"{self.namespace}/{self.method}"


OPERATIONS: dict[Operation, OperationSpec] = {
    Operation.SUBMIT_BATCH: OperationSpec(
        "NFeAutorizacao", f"{WSDL_NS}/NFeAutorizacao4", "nfeAutorizacaoLote"
    ),
    Operation.QUERY_BATCH: OperationSpec(
        "NFeRetAutorizacao", f"{WSDL_NS}/NFeRetAutorizacao4", "nfeRetAutorizacaoLote"
    ),
    Operation.QUERY_DOCUMENT: OperationSpec(
        "NfeConsultaProtocolo", f"{WSDL_NS}/NFeConsultaProtocolo4", "nfeConsultaNF"
    ),
    Operation.SERVICE_STATUS: OperationSpec(
        "NfeStatusServico", f"{WSDL_NS}/NFeStatusServico4", "nfeStatusServicoNF"
    ),
    Operation.SUBMIT_EVENT: OperationSpec(
        "RecepcaoEvento", f"{WSDL_NS}/NFeRecepcaoEvento4", "nfeRecepcaoEvento"
    ),
}

_missing = [op.name for op in Operation if op not in OPERATIONS]
if _missing:
    raise RuntimeError(f"OPERATIONS table has no entry for: {', '.join(_missing)}")
del _missing


# --- build ---

_SKELETON = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soap12:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
    'xmlns:xsd="http://www.w3.org/2001/XMLSchema" '
    f'xmlns:soap12="{SOAP12_NS}">'
    "<soap12:Body>"
    '<nfeDadosMsg xmlns="{namespace}">{document}</nfeDadosMsg>'
    "</soap12:Body>"
    "</soap12:Envelope>"
)


def build_envelope(operation: Operation, document_xml: str) -> str:
    """Wrap *document_xml* for *operation*. The document is embedded verbatim."""
    spec = OPERATIONS[operation]
    return _SKELETON.replace("{namespace}", spec.namespace).replace(
        "{document}", strip_xml_declaration(document_xml).strip()
    )


# --- parse ---

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)

Strategy = Callable[[etree._Element, frozenset[str]], "etree._Element | None"]


def _local(el: etree._Element) -> str:
    if not isinstance(el.tag, str):
        return ""
    return etree.QName(el).localname.lower()


def _children(el: etree._Element) -> Iterable[etree._Element]:
    return (c for c in el if isinstance(c.tag, str))


def _body(root: etree._Element) -> etree._Element | None:
    if _local(root) == "envelope":
        return next((c for c in _children(root) if _local(c) == "body"), None)
    return None


def _direct_in_body(root: etree._Element, names: frozenset[str]) -> etree._Element | None:
    """``<Body><retX>`` or a bare ``<retX>`` document."""
    body = _body(root)
    if body is None:
        return root if _local(root) in names else None
    return next((c for c in _children(body) if _local(c) in names), None)


def _inside_result_msg(root: etree._Element, names: frozenset[str]) -> etree._Element | None:
    """``<Body><nfeResultMsg><retX>``: one wrapper level, whatever its name."""
    body = _body(root)
    wrappers = [root] if body is None else list(_children(body))
    for wrapper in wrappers:
        for c in _children(wrapper):
            if _local(c) in names:
                return c
    return None


STRATEGIES: tuple[Strategy, ...] = (_direct_in_body, _inside_result_msg)


def _parse_xml(envelope_xml: str | bytes) -> etree._Element | None:
    if not envelope_xml:
        return None
    data = envelope_xml.encode("utf-8") if isinstance(envelope_xml, str) else envelope_xml
    try:
        return etree.fromstring(data.strip(), parser=_PARSER)
    except etree.XMLSyntaxError:
        logger.warning("Resposta SEFAZ não é XML válido: %s", data[:200])
        return None


def _locate(envelope_xml: str | bytes, *tags: str) -> etree._Element | None:
    root = _parse_xml(envelope_xml)
    if root is None:
        return None
    names = frozenset(t.lower() for t in tags)
    for strategy in STRATEGIES:
        found = strategy(root, names)
        if found is not None:
            return found
    return None


def _find(el: etree._Element, name: str) -> etree._Element | None:
    """First descendant (or self) with local name *name*, case-insensitive."""
    target = name.lower()
    for node in el.iter():
        if _local(node) == target:
            return node
    return None


def _child(el: etree._Element, name: str) -> etree._Element | None:
    target = name.lower()
    return next((c for c in _children(el) if _local(c) == target), None)


def _text(el: etree._Element | None, name: str) -> str | None:
    if el is None:
        return None
    node = _child(el, name)
    if node is None or node.text is None:
        return None
    value = node.text.strip()
    return value or None


def parse_authorization_response(envelope_xml: str | bytes) -> AutorizacaoResult | None:
    """Parse ``retEnviNFe``, ``retConsReciNFe`` or ``retConsSitNFe``.

    When a ``protNFe/infProt`` is present its cStat/xMotivo describe the
    document and take precedence over the batch-level pair.
    """
    ret = _locate(envelope_xml, "retEnviNFe", "retConsReciNFe", "retConsSitNFe")
    if ret is None:
        return None

    batch_code = _text(ret, "cStat")
    batch_reason = _text(ret, "xMotivo") or ""
    receipt = None
    inf_rec = _child(ret, "infRec")
    if inf_rec is not None:
        receipt = _text(inf_rec, "nRec")
    receipt = receipt or _text(ret, "nRec")

    prot = _find(ret, "protNFe")
    inf_prot = _child(prot, "infProt") if prot is not None else None
    if inf_prot is not None and _text(inf_prot, "cStat"):
        return AutorizacaoResult(
            status_code=_text(inf_prot, "cStat") or "",
            reason=_text(inf_prot, "xMotivo") or "",
            protocol=_text(inf_prot, "nProt"),
            authorized_at=_text(inf_prot, "dhRecbto"),
            access_key=_text(inf_prot, "chNFe"),
            protocol_xml=etree.tostring(prot, encoding="unicode"),
            receipt_number=receipt,
            batch_status_code=batch_code,
            batch_reason=batch_reason,
        )

    if batch_code is None:
        return None
    return AutorizacaoResult(
        status_code=batch_code,
        reason=batch_reason,
        access_key=_text(ret, "chNFe"),
        receipt_number=receipt,
        batch_status_code=batch_code,
        batch_reason=batch_reason,
    )


def parse_service_status_response(envelope_xml: str | bytes) -> StatusServicoResult | None:
    ret = _locate(envelope_xml, "retConsStatServ")
    if ret is None:
        return None
    code = _text(ret, "cStat")
    if code is None:
        return None
    return StatusServicoResult(
        uf=_text(ret, "cUF") or "",
        status_code=code,
        reason=_text(ret, "xMotivo") or "",
        mean_response_time=_text(ret, "tMed"),
        received_at=_text(ret, "dhRecbto"),
    )


def parse_event_response(envelope_xml: str | bytes) -> EventResult | None:
    """Parse ``retEnvEvento``; ``retEvento/infEvento`` wins over the batch cStat."""
    ret = _locate(envelope_xml, "retEnvEvento")
    if ret is None:
        return None

    batch_code = _text(ret, "cStat")
    ret_evento = _find(ret, "retEvento")
    inf = _child(ret_evento, "infEvento") if ret_evento is not None else None
    if inf is not None and _text(inf, "cStat"):
        seq = _text(inf, "nSeqEvento")
        return EventResult(
            status_code=_text(inf, "cStat") or "",
            reason=_text(inf, "xMotivo") or "",
            protocol=_text(inf, "nProt"),
            registered_at=_text(inf, "dhRegEvento"),
            event_type=_text(inf, "tpEvento"),
            sequence=int(seq) if seq and seq.isdigit() else None,
            access_key=_text(inf, "chNFe"),
            batch_status_code=batch_code,
        )

    if batch_code is None:
        return None
    return EventResult(
        status_code=batch_code,
        reason=_text(ret, "xMotivo") or "",
        batch_status_code=batch_code,
    )
