from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from enum import StrEnum


class DocumentStatus(StrEnum):
    DRAFT = "draft"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    CANCELED = "canceled"


class LetterStatus(StrEnum):
    PENDING = "pending"
    AUTHORIZED = "authorized"


_KEYED_STATUSES = frozenset({DocumentStatus.AUTHORIZED, DocumentStatus.CANCELED})


@dataclass(frozen=True)
class FiscalDocument:
    """An NF-e as seen by the protocol engine.

    ``payload_xml`` is the signed ``<NFe>`` produced by the payload builder;
    the engine embeds it verbatim and never inspects amounts or items.
    """

    id: str
    tenant_id: str
    number: int
    series: int
    status: DocumentStatus = DocumentStatus.DRAFT
    payload_xml: str = ""
    environment: str = "homologacao"

    access_key: str | None = None
    protocol: str | None = None
    authorized_at: str | None = None
    authorized_xml: str | None = None
    danfe_url: str | None = None
    xml_url: str | None = None

    receipt_number: str | None = None
    status_code: str | None = None
    status_reason: str | None = None

    cancel_protocol: str | None = None
    canceled_at: str | None = None
    cancel_reason: str | None = None
    # set while a cancellation event with an unknown outcome awaits confirmation
    cancel_requested_at: str | None = None

    duplicated_from: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", DocumentStatus(self.status))
        has_key = bool(self.access_key)
        if has_key != (self.status in _KEYED_STATUSES):
            raise ValueError(
                f"access_key must be set iff status is authorized/canceled "
                f"(status={self.status}, access_key={self.access_key!r})"
            )
        if has_key and not re.fullmatch(r"\d{44}", self.access_key or ""):
            raise ValueError(f"access_key must have 44 digits: {self.access_key!r}")

    @classmethod
    def from_dict(cls, d: dict) -> FiscalDocument:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = str(self.status)
        return data


@dataclass(frozen=True)
class CorrectionLetter:
    """CC-e: a sequenced amendment to an authorized NF-e."""

    document_id: str
    sequence: int
    text: str
    status: LetterStatus = LetterStatus.PENDING
    protocol: str | None = None
    registered_at: str | None = None
    created_at: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", LetterStatus(self.status))
        if self.sequence < 1:
            raise ValueError(f"sequence must be >= 1, got {self.sequence}")

    @classmethod
    def from_dict(cls, d: dict) -> CorrectionLetter:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = str(self.status)
        return data
