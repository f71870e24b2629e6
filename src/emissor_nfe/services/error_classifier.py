"""Map SEFAZ rejections and gateway error text to actionable error kinds.

Two independent sources feed the result: textual signals (Portuguese
messages from SEFAZ, the gateway, or local draft validation) and bracketed
three-digit SEFAZ codes such as ``[778]``. Results are additive and
deduplicated by kind. A message nothing recognizes is still returned, as a
single ``unclassified`` entry carrying the raw text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum


class ErrorKind(StrEnum):
    MISSING_TAX_CLASSIFICATION = "missing_tax_classification"
    MISSING_REGION_CODE = "missing_region_code"
    INVALID_PARTY_DOCUMENT = "invalid_party_document"
    INCOMPLETE_ADDRESS = "incomplete_address"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class Remediation:
    route: str
    action: str


REMEDIATION: dict[ErrorKind, Remediation] = {
    ErrorKind.MISSING_TAX_CLASSIFICATION: Remediation(
        "/fiscal/products", "Cadastre o NCM (8 dígitos) dos produtos em Configurações Fiscais > Produtos"
    ),
    ErrorKind.MISSING_REGION_CODE: Remediation(
        "/fiscal?tab=notas", "Informe o código IBGE do município do destinatário na nota"
    ),
    ErrorKind.INVALID_PARTY_DOCUMENT: Remediation(
        "/fiscal?tab=notas", "Corrija o CPF/CNPJ ou a inscrição estadual do destinatário"
    ),
    ErrorKind.INCOMPLETE_ADDRESS: Remediation(
        "/fiscal?tab=notas", "Complete o endereço do destinatário (logradouro, número, bairro, CEP)"
    ),
    ErrorKind.MISSING_REQUIRED_FIELD: Remediation(
        "/fiscal?tab=notas", "Preencha os campos obrigatórios indicados e reenvie"
    ),
    ErrorKind.UNCLASSIFIED: Remediation(
        "/fiscal", "Verifique a mensagem da SEFAZ e, se necessário, contate o suporte"
    ),
}

_missing = [k for k in ErrorKind if k not in REMEDIATION]
if _missing:
    raise RuntimeError(f"REMEDIATION table has no entry for: {_missing}")
del _missing


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    related_entities: tuple[str, ...] = field(default_factory=tuple)
    reject_code: str | None = None

    @property
    def remediation(self) -> Remediation:
        return REMEDIATION[self.kind]

    def to_dict(self) -> dict:
        return {
            "kind": str(self.kind),
            "message": self.message,
            "related_entities": list(self.related_entities),
            "reject_code": self.reject_code,
            "remediation": {"route": self.remediation.route, "action": self.remediation.action},
        }


# SEFAZ rejection codes (Manual de Orientação do Contribuinte, NT 2016.002 onwards)
REJECT_CODES: dict[str, tuple[ErrorKind, str]] = {
    "204": (ErrorKind.UNCLASSIFIED, "Duplicidade de NF-e"),
    "207": (ErrorKind.INVALID_PARTY_DOCUMENT, "CNPJ do emitente inválido"),
    "208": (ErrorKind.INVALID_PARTY_DOCUMENT, "CNPJ do destinatário inválido"),
    "209": (ErrorKind.INVALID_PARTY_DOCUMENT, "IE do emitente inválida"),
    "210": (ErrorKind.INVALID_PARTY_DOCUMENT, "IE do destinatário inválida"),
    "215": (ErrorKind.MISSING_REQUIRED_FIELD, "Falha no schema XML"),
    "225": (ErrorKind.MISSING_REQUIRED_FIELD, "Falha no schema XML da NF-e"),
    "226": (ErrorKind.MISSING_REGION_CODE, "Código da UF do emitente diverge da UF autorizadora"),
    "232": (ErrorKind.INVALID_PARTY_DOCUMENT, "IE do destinatário não informada"),
    "237": (ErrorKind.INVALID_PARTY_DOCUMENT, "CPF do destinatário inválido"),
    "272": (ErrorKind.MISSING_REGION_CODE, "Código do município do emitente: dígito inválido"),
    "273": (ErrorKind.MISSING_REGION_CODE, "Código do município do emitente difere da UF do emitente"),
    "274": (ErrorKind.MISSING_REGION_CODE, "Código do município do destinatário: dígito inválido"),
    "275": (ErrorKind.MISSING_REGION_CODE, "Código do município do destinatário difere da UF do destinatário"),
    "301": (ErrorKind.UNCLASSIFIED, "Uso denegado: irregularidade fiscal do emitente"),
    "302": (ErrorKind.UNCLASSIFIED, "Uso denegado: irregularidade fiscal do destinatário"),
    "501": (ErrorKind.UNCLASSIFIED, "Prazo de cancelamento superior ao previsto na legislação"),
    "539": (ErrorKind.UNCLASSIFIED, "Duplicidade de NF-e com diferença na chave de acesso"),
    "573": (ErrorKind.UNCLASSIFIED, "Duplicidade de evento"),
    "594": (ErrorKind.UNCLASSIFIED, "Número de sequência do evento maior que o permitido"),
    "777": (ErrorKind.MISSING_TAX_CLASSIFICATION, "Obrigatória a informação do NCM completo"),
    "778": (ErrorKind.MISSING_TAX_CLASSIFICATION, "Informado NCM inexistente"),
}

_CODE = re.compile(r"\[(\d{3})\]")

_NEG = r"(?:inv[áa]lid[oa]|incomplet[oa]|obrigat[óo]ri[oa]|ausente|inexistente|em branco|n[ãa]o\s+(?:informad[oa]|preenchid[oa]|cadastrad[oa]))"

# Specific signals, checked per clause. Order is the output order.
_SIGNALS: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = (
    (
        ErrorKind.MISSING_TAX_CLASSIFICATION,
        re.compile(rf"\bsem\s+ncm\b|\bncm\b.*{_NEG}|codigo_ncm|\bncm\b.*8\s+d[íi]gitos", re.IGNORECASE),
    ),
    (
        ErrorKind.MISSING_REGION_CODE,
        re.compile(
            rf"c[óo]digo\s+(?:ibge|do\s+munic[íi]pio)|codigo_municipio|\bcmun\b|munic[íi]pio.*{_NEG}",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorKind.INVALID_PARTY_DOCUMENT,
        re.compile(
            rf"\b(?:cnpj|cpf)\b.*(?:{_NEG}|d[íi]gitos?)|cpf_cnpj|(?:cnpj|cpf)_destinatario"
            rf"|inscri[çc][ãa]o\s+estadual.*{_NEG}",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorKind.INCOMPLETE_ADDRESS,
        re.compile(
            rf"endere[çc]o.*{_NEG}|\bcep\b.*{_NEG}|\blogradouro\b.*{_NEG}|\bbairro\b.*{_NEG}"
            r"|(?:cep|logradouro|numero|bairro)_destinatario",
            re.IGNORECASE,
        ),
    ),
)

# Generic signal, used only for clauses no specific signal explains
_REQUIRED_FIELD = re.compile(
    rf"n[ãa]o\s+pode\s+ficar\s+em\s+branco|can't\s+be\s+blank|campo.*{_NEG}|[ée]\s+obrigat[óo]ri[oa]",
    re.IGNORECASE,
)

_CLAUSE_SPLIT = re.compile(r"(?<!\d)\.(?!\d)|[;\n]")
_ENTITY_LIST = re.compile(r"\b(?:produtos?|itens|item\(ns\)|item)[^:]*:\s*(.+)$", re.IGNORECASE)
_ENTITY_SPLIT = re.compile(r"\s*,\s*")
# "A, B e C": only the last " e " of a comma list separates items
_LAST_AND = re.compile(r"^(.*\S)\s+e\s+(\S.*)$")


def _clauses(raw: str) -> list[str]:
    return [c.strip() for c in _CLAUSE_SPLIT.split(raw) if c.strip()]


def _entities(clause: str) -> tuple[str, ...]:
    """Names listed after a colon: ``Produtos sem NCM: A, B`` → (A, B)."""
    match = _ENTITY_LIST.search(clause)
    if not match:
        return ()
    items = [e.strip() for e in _ENTITY_SPLIT.split(match.group(1)) if e.strip()]
    if len(items) > 1:
        last = _LAST_AND.match(items[-1])
        if last:
            items[-1:] = [last.group(1), last.group(2)]
    return tuple(items)


def _merge(found: dict[ErrorKind, ClassifiedError], err: ClassifiedError) -> None:
    current = found.get(err.kind)
    if current is None:
        found[err.kind] = err
        return
    entities = current.related_entities + tuple(
        e for e in err.related_entities if e not in current.related_entities
    )
    found[err.kind] = ClassifiedError(
        current.kind, current.message, entities, current.reject_code or err.reject_code
    )


def classify(raw_message: str) -> list[ClassifiedError]:
    """Return every problem *raw_message* describes, most specific first."""
    if raw_message is None:
        raise TypeError("raw_message is required")
    raw = str(raw_message)
    found: dict[ErrorKind, ClassifiedError] = {}

    for clause in _clauses(raw):
        matched = False
        for kind, pattern in _SIGNALS:
            if pattern.search(clause):
                matched = True
                entities = _entities(clause) if kind is ErrorKind.MISSING_TAX_CLASSIFICATION else ()
                _merge(found, ClassifiedError(kind, clause, entities))
        if not matched and _REQUIRED_FIELD.search(clause):
            _merge(found, ClassifiedError(ErrorKind.MISSING_REQUIRED_FIELD, clause))

    unclassified_code: str | None = None
    for code in _CODE.findall(raw):
        entry = REJECT_CODES.get(code)
        if entry is None:
            unclassified_code = unclassified_code or code
            continue
        kind, reason = entry
        if kind is ErrorKind.UNCLASSIFIED:
            unclassified_code = unclassified_code or code
            continue
        _merge(found, ClassifiedError(kind, f"[{code}] {reason}", reject_code=code))

    if found:
        return list(found.values())
    return [ClassifiedError(ErrorKind.UNCLASSIFIED, raw, reject_code=unclassified_code)]


def canonical_reason(code: str) -> str | None:
    entry = REJECT_CODES.get(code)
    return entry[1] if entry else None


def classify_status(code: str, reason: str) -> list[ClassifiedError]:
    """Classify a SEFAZ cStat/xMotivo pair."""
    return classify(f"[{code}] {reason}")
