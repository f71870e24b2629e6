"""Delivery of CC-e and cancellation events.

A tenant talks to SEFAZ directly (signed ``envEvento`` over mTLS) or through
a gateway, depending on its ``gateway`` config section. Both channels answer
with an EventResult and never raise for remote failures.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from signxml.exceptions import SignXMLException

from emissor_nfe.config import BRT, TP_AMB
from emissor_nfe.endpoints import get_endpoint, get_uf_code
from emissor_nfe.models.document import FiscalDocument
from emissor_nfe.models.responses import EventResult
from emissor_nfe.models.tenant import Tenant
from emissor_nfe.services import transport
from emissor_nfe.services.envelope import OPERATIONS, Operation, build_envelope, parse_event_response
from emissor_nfe.services.gateway_client import GatewayClient, build_gateway_client
from emissor_nfe.services.http_retry import SEFAZ_SUBMIT
from emissor_nfe.services.messages import (
    CANCEL_EVENT,
    CCE_EVENT,
    build_event,
    build_event_batch,
)
from emissor_nfe.services.xml_signer import sign_event
from emissor_nfe.utils.certificate import TransportCredential

logger = logging.getLogger(__name__)


class EventChannel(Protocol):
    def send_correction(self, document: FiscalDocument, sequence: int, text: str) -> EventResult: ...

    def send_cancellation(self, document: FiscalDocument, reason: str) -> EventResult: ...


def failure_message(result: EventResult) -> str:
    """Raw text handed to the error classifier for a non-registered event."""
    if result.raw_error:
        return result.raw_error
    return f"[{result.status_code}] {result.reason}"


def _batch_id(now: datetime) -> str:
    return now.strftime("%y%m%d%H%M%S%f")[:15]


class SefazEventChannel:
    def __init__(
        self,
        tenant: Tenant,
        credential: TransportCredential,
        *,
        sender: Callable[..., transport.TransportResponse] = transport.send,
        signer: Callable = sign_event,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tenant = tenant
        self._credential = credential
        self._sender = sender
        self._signer = signer
        self._clock = clock or (lambda: datetime.now(BRT))

    def send_correction(self, document: FiscalDocument, sequence: int, text: str) -> EventResult:
        return self._send(document, CCE_EVENT, sequence, correction_text=text)

    def send_cancellation(self, document: FiscalDocument, reason: str) -> EventResult:
        return self._send(
            document, CANCEL_EVENT, 1, protocol=document.protocol, justification=reason
        )

    def _send(self, document: FiscalDocument, event_type: str, sequence: int, **detail) -> EventResult:
        now = self._clock()
        tenant = self._tenant
        evento = build_event(
            event_type=event_type,
            access_key=document.access_key or "",
            cnpj=tenant.cnpj,
            c_orgao=get_uf_code(tenant.uf),
            tp_amb=TP_AMB[document.environment],
            dh_evento=now.isoformat(timespec="seconds"),
            sequence=sequence,
            **detail,
        )
        try:
            signed = self._signer(
                evento,
                self._credential.private_key_pem.encode(),
                self._credential.certificate_pem.encode(),
            )
        except (SignXMLException, ValueError) as exc:
            logger.error("Falha ao assinar evento %s (tenant %s): %s", event_type, tenant.id, exc)
            return EventResult(
                status_code="", reason="", event_type=event_type, raw_error=f"Falha na assinatura: {exc}"
            )

        spec = OPERATIONS[Operation.SUBMIT_EVENT]
        url = get_endpoint(tenant.uf, spec.service, document.environment, tenant.contingencia)
        envelope = build_envelope(Operation.SUBMIT_EVENT, build_event_batch(signed, _batch_id(now)))
        resp = self._sender(
            url, spec.soap_action, envelope, credential=self._credential, policy=SEFAZ_SUBMIT
        )
        if not resp.success:
            return EventResult(
                status_code="",
                reason="",
                event_type=event_type,
                sequence=sequence,
                raw_error=f"Falha de comunicação com a SEFAZ: {resp.error}",
                unknown=True,
            )

        parsed = parse_event_response(resp.body)
        if parsed is None:
            logger.error("Resposta de evento não reconhecida (tenant %s): %s", tenant.id, resp.body[:500])
            return EventResult(
                status_code="",
                reason="",
                event_type=event_type,
                sequence=sequence,
                raw_error="Resposta da SEFAZ em formato inesperado",
                unknown=True,
            )
        return parsed


class GatewayEventChannel:
    """Events through the gateway; the document id is the gateway ``ref``."""

    def __init__(self, client: GatewayClient) -> None:
        self._client = client

    def send_correction(self, document: FiscalDocument, sequence: int, text: str) -> EventResult:
        result = self._client.send_correction(document.id, text)
        event = self._to_event(result, document, CCE_EVENT, sequence, ok_status="autorizado")
        numero = result.data.get("numero_carta_correcao")
        if event.registered and numero is not None and str(numero) != str(sequence):
            logger.warning(
                "Gateway numerou a CC-e de %s como %s (local: %d)", document.id, numero, sequence
            )
        return event

    def send_cancellation(self, document: FiscalDocument, reason: str) -> EventResult:
        result = self._client.cancel(document.id, reason)
        return self._to_event(result, document, CANCEL_EVENT, 1, ok_status="cancelado")

    @staticmethod
    def _to_event(result, document: FiscalDocument, event_type: str, sequence: int, *, ok_status: str) -> EventResult:
        data = result.data
        code = str(data.get("status_sefaz") or "")
        reason = str(data.get("mensagem_sefaz") or "")
        if result.success and not code and data.get("status") == ok_status:
            code = "135"
        return EventResult(
            status_code=code,
            reason=reason,
            protocol=data.get("protocolo"),
            registered_at=data.get("data_evento"),
            event_type=event_type,
            sequence=sequence,
            access_key=document.access_key,
            raw_error=None if result.success else result.error,
            unknown=result.unknown,
        )


def build_event_channel(
    tenant: Tenant,
    credential_provider: Callable[[Tenant], TransportCredential],
    sender: Callable[..., transport.TransportResponse] = transport.send,
) -> EventChannel:
    """Pick the tenant's channel. Only the SEFAZ channel needs the certificate."""
    client = build_gateway_client(tenant)
    if client is not None:
        return GatewayEventChannel(client)
    return SefazEventChannel(tenant, credential_provider(tenant), sender=sender)
