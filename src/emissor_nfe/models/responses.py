from __future__ import annotations

from dataclasses import dataclass

AUTHORIZED_CODES = frozenset({"100", "150"})
PROCESSING_CODES = frozenset({"103", "105"})
SERVICE_ONLINE = "107"
EVENT_REGISTERED_CODES = frozenset({"135", "136"})
LATE_CANCEL_REGISTERED = "155"
# 573 Duplicidade de evento: this tpEvento/nSeqEvento is already on file
DUPLICATE_EVENT = "573"
# 218 NF-e já cancelada na base da SEFAZ, 420 cancelamento para NF-e já cancelada
ALREADY_CANCELED_CODES = frozenset({"218", "420"})
# retConsSitNFe situation of a canceled NF-e
CANCELED_SITUATION_CODES = frozenset({"101", "151", "155"})


@dataclass(frozen=True)
class AutorizacaoResult:
    """Outcome of a submit/query-batch/query-document call.

    When the response embeds a ``protNFe``, its ``infProt`` fields populate
    ``status_code``/``reason``; the batch-level pair is kept in
    ``batch_status_code``/``batch_reason``.
    """

    status_code: str
    reason: str
    protocol: str | None = None
    authorized_at: str | None = None
    access_key: str | None = None
    protocol_xml: str | None = None
    receipt_number: str | None = None
    batch_status_code: str | None = None
    batch_reason: str | None = None

    @property
    def authorized(self) -> bool:
        return self.status_code in AUTHORIZED_CODES

    @property
    def processing(self) -> bool:
        return self.status_code in PROCESSING_CODES


@dataclass(frozen=True)
class StatusServicoResult:
    uf: str
    status_code: str
    reason: str
    mean_response_time: str | None = None
    received_at: str | None = None

    @property
    def online(self) -> bool:
        return self.status_code == SERVICE_ONLINE


@dataclass(frozen=True)
class EventResult:
    """Acknowledgement of a correction or cancellation event.

    ``unknown`` is set when the event may have reached SEFAZ but no answer
    came back (timeout, dropped connection, unreadable reply).
    """

    status_code: str
    reason: str
    protocol: str | None = None
    registered_at: str | None = None
    event_type: str | None = None
    sequence: int | None = None
    access_key: str | None = None
    batch_status_code: str | None = None
    raw_error: str | None = None
    unknown: bool = False

    @property
    def registered(self) -> bool:
        if self.status_code in EVENT_REGISTERED_CODES:
            return True
        return self.status_code == LATE_CANCEL_REGISTERED and self.event_type == "110111"

    @property
    def already_registered(self) -> bool:
        """SEFAZ refused the event because an identical one is already registered."""
        if self.status_code == DUPLICATE_EVENT:
            return True
        return self.status_code in ALREADY_CANCELED_CODES and self.event_type == "110111"
