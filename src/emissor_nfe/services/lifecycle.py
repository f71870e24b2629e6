"""NF-e lifecycle: submission, polling, cancellation and duplication.

The document is persisted as ``pending`` before anything is sent, and every
network round trip runs inside the per-document submission guard. A
transport failure never moves a document out of ``pending``: SEFAZ may have
received the batch, so the only way forward is ``poll_status``. A
cancellation whose answer was lost is remembered on the document and settled
by ``poll_status`` or by repeating the cancel.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from emissor_nfe import config as _config
from emissor_nfe.config import BRT, GUARD_WAIT_TIMEOUT, TP_AMB
from emissor_nfe.endpoints import get_endpoint, get_uf_code
from emissor_nfe.models.document import DocumentStatus, FiscalDocument
from emissor_nfe.models.responses import AUTHORIZED_CODES, CANCELED_SITUATION_CODES, StatusServicoResult
from emissor_nfe.models.tenant import Tenant
from emissor_nfe.services import transport
from emissor_nfe.services.envelope import (
    OPERATIONS,
    Operation,
    build_envelope,
    parse_authorization_response,
    parse_service_status_response,
)
from emissor_nfe.services.error_classifier import ClassifiedError, classify, classify_status
from emissor_nfe.services.event_channel import EventChannel, failure_message
from emissor_nfe.services.exceptions import (
    BusinessRuleError,
    CertificateExpired,
    CredentialError,
    TransportError,
)
from emissor_nfe.services.gateway_client import GatewayClient, build_gateway_client
from emissor_nfe.services.http_retry import SEFAZ_QUERY, SEFAZ_SUBMIT
from emissor_nfe.services.messages import (
    access_key_from_payload,
    build_batch,
    build_batch_query,
    build_document_query,
    build_service_status,
    protocol_document,
)
from emissor_nfe.utils import sequence
from emissor_nfe.utils.access_key import is_valid_access_key
from emissor_nfe.utils.certificate import TransportCredential
from emissor_nfe.utils.store import DocumentStore

logger = logging.getLogger(__name__)

TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.DRAFT: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.PENDING: frozenset(
        {DocumentStatus.AUTHORIZED, DocumentStatus.REJECTED, DocumentStatus.DRAFT}
    ),
    DocumentStatus.AUTHORIZED: frozenset({DocumentStatus.CANCELED}),
    DocumentStatus.REJECTED: frozenset(),
    DocumentStatus.CANCELED: frozenset(),
}

# Answers that say nothing definitive about the document itself:
# 106 lote não localizado, 108/109 serviço paralisado, 217 NF-e não consta na base
INCONCLUSIVE_CODES = frozenset({"106", "108", "109", "217"})
NOT_FOUND_CODES = frozenset({"106", "217"})

CANCEL_MIN_LEN = 15
CANCEL_MAX_LEN = 255

STATUS_LABELS = {
    DocumentStatus.DRAFT: "rascunho",
    DocumentStatus.PENDING: "pendente",
    DocumentStatus.AUTHORIZED: "autorizada",
    DocumentStatus.REJECTED: "rejeitada",
    DocumentStatus.CANCELED: "cancelada",
}

CredentialProvider = Callable[[Tenant], TransportCredential]
TenantLoader = Callable[[str], Tenant]
ChannelFactory = Callable[[Tenant], EventChannel]
NumberAllocator = Callable[[str, int, str], int]
GatewayFactory = Callable[[Tenant], GatewayClient | None]


@dataclass(frozen=True)
class Outcome:
    """What a lifecycle operation did to the document.

    ``error`` is set when the operation did not reach its goal; ``unknown``
    marks outcomes SEFAZ may still have processed (timeouts, lost responses).
    """

    document: FiscalDocument
    classified_errors: tuple[ClassifiedError, ...] = field(default_factory=tuple)
    error: str | None = None
    unknown: bool = False
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def check_transition(document: FiscalDocument, target: DocumentStatus) -> None:
    if target not in TRANSITIONS[document.status]:
        raise BusinessRuleError(
            f"Operação não permitida: NF-e {document.id} está {STATUS_LABELS[document.status]}",
            code="invalid_state",
        )


def _batch_id() -> str:
    return datetime.now(BRT).strftime("%y%m%d%H%M%S%f")[:15]


class InvoiceLifecycle:
    def __init__(
        self,
        store: DocumentStore,
        tenants: TenantLoader,
        credentials: CredentialProvider,
        channels: ChannelFactory,
        *,
        sender: Callable[..., transport.TransportResponse] = transport.send,
        allocate_number: NumberAllocator = sequence.next_number,
        issued_dir: Callable[[str], Path] = _config.get_issued_dir,
        gateways: GatewayFactory = build_gateway_client,
        guard_timeout: float = GUARD_WAIT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tenants = tenants
        self._credentials = credentials
        self._channels = channels
        self._sender = sender
        self._allocate_number = allocate_number
        self._issued_dir = issued_dir
        self._gateways = gateways
        self._guard_timeout = guard_timeout
        self._clock = clock or (lambda: datetime.now(BRT))

    # --- helpers ---

    def require(self, document_id: str) -> FiscalDocument:
        doc = self._store.get(document_id)
        if doc is None:
            raise BusinessRuleError(f"NF-e não encontrada: {document_id}", code="not_found")
        return doc

    def _credential(self, tenant: Tenant) -> TransportCredential:
        try:
            credential = self._credentials(tenant)
        except CredentialError as exc:
            logger.error("Certificado do tenant %s inutilizável: %s", tenant.id, exc)
            raise
        if credential.is_expired(self._clock()):
            logger.error("Certificado do tenant %s expirado em %s", tenant.id, credential.not_after)
            raise CertificateExpired(
                f"Certificado do tenant {tenant.id} expirou em {credential.not_after:%d/%m/%Y}",
                not_after=credential.not_after,
            )
        return credential

    def _call(
        self,
        tenant: Tenant,
        document: FiscalDocument,
        operation: Operation,
        message: str,
        credential: TransportCredential,
        policy,
    ) -> transport.TransportResponse:
        spec = OPERATIONS[operation]
        url = get_endpoint(tenant.uf, spec.service, document.environment, tenant.contingencia)
        logger.info("%s %s (tenant %s, NF-e %s)", spec.method, url, tenant.id, document.id)
        return self._sender(
            url, spec.soap_action, build_envelope(operation, message), credential=credential, policy=policy
        )

    def _write_issued(self, document: FiscalDocument) -> str | None:
        xml = document.authorized_xml or document.payload_xml
        try:
            out_path = self._issued_dir(document.environment) / f"{document.access_key}.xml"
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(xml, encoding="utf-8")
            return str(out_path)
        except OSError:
            logger.warning("Failed to save authorized XML for %s", document.id, exc_info=True)
            return None

    def _attach_artifacts(self, tenant: Tenant, document: FiscalDocument) -> FiscalDocument:
        """Record the gateway's DANFE/XML links. Best effort: the authorization stands either way."""
        gateway = self._gateways(tenant)
        if gateway is None:
            return document
        result = gateway.get_status(document.id)
        urls = gateway.document_urls(result.data) if result.success else {}
        if "danfe" not in urls:
            logger.warning("DANFE da NF-e %s indisponível no gateway: %s", document.id, result.error or "sem link")
            return document
        return self._store.save(
            replace(document, danfe_url=urls["danfe"], xml_url=document.xml_url or urls.get("xml"))
        )

    def _mark_canceled(
        self, doc: FiscalDocument, reason: str | None, protocol: str | None, registered_at: str | None
    ) -> FiscalDocument:
        check_transition(doc, DocumentStatus.CANCELED)
        doc = self._store.save(
            replace(
                doc,
                status=DocumentStatus.CANCELED,
                cancel_protocol=protocol,
                canceled_at=registered_at or self._clock().isoformat(timespec="seconds"),
                cancel_reason=reason or doc.cancel_reason,
                cancel_requested_at=None,
            )
        )
        logger.info("NF-e %s cancelada: protocolo %s", doc.id, doc.cancel_protocol or "-")
        return doc

    def _confirm_cancellation(self, tenant: Tenant, doc: FiscalDocument) -> Outcome:
        """Settle a cancellation whose answer was lost, asking the gateway or SEFAZ."""
        gateway = self._gateways(tenant)
        if gateway is not None:
            result = gateway.get_status(doc.id)
            situation = result.data.get("status") if result.success else None
            canceled, authorized = situation == "cancelado", situation == "autorizado"
            answer = f"gateway: {situation or result.error}"
        else:
            message = build_document_query(doc.access_key or "", TP_AMB[doc.environment])
            resp = self._call(
                tenant, doc, Operation.QUERY_DOCUMENT, message, self._credential(tenant), SEFAZ_QUERY
            )
            result = parse_authorization_response(resp.body) if resp.success else None
            situation = result.batch_status_code if result is not None else None
            canceled = situation in CANCELED_SITUATION_CODES
            authorized = situation in AUTHORIZED_CODES
            if result is not None:
                answer = f"[{situation}] {result.batch_reason}"
            else:
                answer = resp.error or "resposta inesperada"

        if canceled:
            doc = self._mark_canceled(doc, None, doc.cancel_protocol, None)
            return Outcome(doc, message=f"Cancelamento confirmado ({answer})")
        if authorized:
            doc = self._store.save(replace(doc, cancel_requested_at=None))
            logger.warning("Cancelamento da NF-e %s não foi registrado; segue autorizada", doc.id)
            return Outcome(doc, message="Cancelamento não registrado pela SEFAZ; a NF-e segue autorizada")
        return Outcome(doc, error=f"Cancelamento ainda sem confirmação ({answer})", unknown=True)

    # --- authorization results ---

    def _apply_authorization(self, doc: FiscalDocument, resp: transport.TransportResponse) -> Outcome:
        if not resp.success:
            if resp.timed_out:
                error = "Tempo esgotado aguardando a SEFAZ; resultado desconhecido, consulte o status"
            else:
                error = f"Falha de comunicação com a SEFAZ ({resp.error}); consulte o status"
            logger.error("NF-e %s (tenant %s): %s", doc.id, doc.tenant_id, error)
            return Outcome(doc, error=error, unknown=True)

        result = parse_authorization_response(resp.body)
        if result is None:
            logger.error(
                "NF-e %s (tenant %s): resposta não reconhecida: %s", doc.id, doc.tenant_id, resp.body[:500]
            )
            return Outcome(doc, error="Resposta da SEFAZ em formato inesperado; consulte o status", unknown=True)

        code, reason = result.status_code, result.reason

        if result.authorized:
            key = result.access_key or access_key_from_payload(doc.payload_xml)
            if not key or not re.fullmatch(r"\d{44}", key):
                logger.error("NF-e %s autorizada sem chave de acesso válida: %r", doc.id, key)
                return Outcome(doc, error="Autorização sem chave de acesso válida; consulte o status", unknown=True)
            authorized_xml = (
                protocol_document(doc.payload_xml, result.protocol_xml) if result.protocol_xml else None
            )
            check_transition(doc, DocumentStatus.AUTHORIZED)
            doc = self._store.save(
                replace(
                    doc,
                    status=DocumentStatus.AUTHORIZED,
                    access_key=key,
                    protocol=result.protocol,
                    authorized_at=result.authorized_at,
                    authorized_xml=authorized_xml,
                    receipt_number=result.receipt_number or doc.receipt_number,
                    status_code=code,
                    status_reason=reason,
                )
            )
            xml_url = self._write_issued(doc)
            if xml_url:
                doc = self._store.save(replace(doc, xml_url=xml_url))
            logger.info("NF-e %s autorizada: protocolo %s", doc.id, doc.protocol)
            return Outcome(doc, message=f"[{code}] {reason}")

        if result.processing or code in INCONCLUSIVE_CODES:
            doc = self._store.save(
                replace(
                    doc,
                    receipt_number=result.receipt_number or doc.receipt_number,
                    status_code=code,
                    status_reason=reason,
                )
            )
            if result.processing:
                return Outcome(doc, message=f"[{code}] {reason}")
            return Outcome(doc, error=f"[{code}] {reason}", unknown=True)

        check_transition(doc, DocumentStatus.REJECTED)
        doc = self._store.save(
            replace(doc, status=DocumentStatus.REJECTED, status_code=code, status_reason=reason)
        )
        logger.warning("NF-e %s rejeitada: [%s] %s", doc.id, code, reason)
        return Outcome(doc, tuple(classify_status(code, reason)), error=f"[{code}] {reason}")

    # --- operations ---

    def submit(self, document_id: str) -> Outcome:
        """Send a draft to SEFAZ. Only a draft can be submitted, and only once."""
        check_transition(self.require(document_id), DocumentStatus.PENDING)
        with self._store.submission_guard(document_id):
            doc = self.require(document_id)
            check_transition(doc, DocumentStatus.PENDING)
            tenant = self._tenants(doc.tenant_id)
            credential = self._credential(tenant)

            doc = self._store.save(replace(doc, status=DocumentStatus.PENDING))
            batch = build_batch(doc.payload_xml, _batch_id(), synchronous=True)
            resp = self._call(tenant, doc, Operation.SUBMIT_BATCH, batch, credential, SEFAZ_SUBMIT)
            return self._with_artifacts(tenant, self._apply_authorization(doc, resp))

    def _with_artifacts(self, tenant: Tenant, outcome: Outcome) -> Outcome:
        if outcome.document.status is not DocumentStatus.AUTHORIZED:
            return outcome
        return replace(outcome, document=self._attach_artifacts(tenant, outcome.document))

    def poll_status(self, document_id: str) -> Outcome:
        """Ask SEFAZ what happened to a pending document. Safe to repeat.

        An authorized document is only looked up when a cancellation is
        awaiting confirmation, or to fetch the gateway's DANFE link.
        """
        doc = self.require(document_id)
        if doc.status is DocumentStatus.AUTHORIZED:
            return self._refresh_authorized(doc)
        if doc.status is not DocumentStatus.PENDING:
            return Outcome(doc, message=f"NF-e {STATUS_LABELS[doc.status]}")

        with self._store.submission_guard(document_id):
            doc = self.require(document_id)
            if doc.status is not DocumentStatus.PENDING:
                return Outcome(doc, message=f"NF-e {STATUS_LABELS[doc.status]}")
            tenant = self._tenants(doc.tenant_id)
            credential = self._credential(tenant)
            tp_amb = TP_AMB[doc.environment]

            if doc.receipt_number:
                message = build_batch_query(doc.receipt_number, tp_amb)
                operation = Operation.QUERY_BATCH
            else:
                key = access_key_from_payload(doc.payload_xml)
                if not key or not is_valid_access_key(key):
                    raise BusinessRuleError(
                        f"NF-e {doc.id} sem recibo nem chave de acesso no XML; não é possível consultar",
                        code="missing_access_key",
                    )
                message = build_document_query(key, tp_amb)
                operation = Operation.QUERY_DOCUMENT

            resp = self._call(tenant, doc, operation, message, credential, SEFAZ_QUERY)
            return self._with_artifacts(tenant, self._apply_authorization(doc, resp))

    def _refresh_authorized(self, doc: FiscalDocument) -> Outcome:
        label = f"NF-e {STATUS_LABELS[doc.status]}"
        if not doc.cancel_requested_at and doc.danfe_url:
            return Outcome(doc, message=label)
        tenant = self._tenants(doc.tenant_id)
        if not doc.cancel_requested_at and self._gateways(tenant) is None:
            return Outcome(doc, message=label)

        with self._store.submission_guard(doc.id):
            doc = self.require(doc.id)
            label = f"NF-e {STATUS_LABELS[doc.status]}"
            if doc.status is not DocumentStatus.AUTHORIZED:
                return Outcome(doc, message=label)
            if doc.cancel_requested_at:
                return self._confirm_cancellation(tenant, doc)
            if doc.danfe_url:
                return Outcome(doc, message=label)
            return Outcome(self._attach_artifacts(tenant, doc), message=label)

    def reopen_draft(self, document_id: str) -> Outcome:
        """Return a pending document to draft once SEFAZ confirmed it never received it."""
        with self._store.submission_guard(document_id):
            doc = self.require(document_id)
            check_transition(doc, DocumentStatus.DRAFT)
            if doc.status_code not in NOT_FOUND_CODES:
                raise BusinessRuleError(
                    "Consulte o status antes: só é possível reabrir uma NF-e que a SEFAZ não localizou",
                    code="unconfirmed_outcome",
                )
            doc = self._store.save(
                replace(doc, status=DocumentStatus.DRAFT, receipt_number=None, status_code=None, status_reason=None)
            )
        return Outcome(doc, message="NF-e reaberta como rascunho")

    def cancel(self, document_id: str, reason: str) -> Outcome:
        doc = self.require(document_id)
        check_transition(doc, DocumentStatus.CANCELED)
        reason = (reason or "").strip()
        if not CANCEL_MIN_LEN <= len(reason) <= CANCEL_MAX_LEN:
            raise BusinessRuleError(
                f"Justificativa deve ter entre {CANCEL_MIN_LEN} e {CANCEL_MAX_LEN} caracteres",
                code="invalid_justification",
            )

        with self._store.submission_guard(document_id, timeout=self._guard_timeout):
            doc = self.require(document_id)
            check_transition(doc, DocumentStatus.CANCELED)
            channel = self._channels(self._tenants(doc.tenant_id))
            result = channel.send_cancellation(doc, reason)

            if result.registered:
                doc = self._mark_canceled(doc, reason, result.protocol, result.registered_at)
                return Outcome(doc, message=f"[{result.status_code}] {result.reason}")
            if result.already_registered:
                # an earlier attempt, whose answer was lost, went through
                doc = self._mark_canceled(doc, reason, doc.cancel_protocol, None)
                return Outcome(doc, message=f"Cancelamento já registrado: [{result.status_code}] {result.reason}")

            raw = failure_message(result)
            if result.unknown:
                doc = self._store.save(
                    replace(
                        doc,
                        cancel_requested_at=self._clock().isoformat(timespec="seconds"),
                        cancel_reason=reason,
                    )
                )
                logger.warning("Cancelamento da NF-e %s sem resposta; consulte o status: %s", doc.id, raw)
                return Outcome(doc, error=raw, unknown=True)
            logger.warning("Cancelamento da NF-e %s recusado: %s", doc.id, raw)
            return Outcome(doc, tuple(classify(raw)), error=raw)

    def duplicate_as_new(self, document_id: str) -> Outcome:
        """Copy a rejected document's payload into a new draft with a fresh number."""
        original = self.require(document_id)
        if original.status is not DocumentStatus.REJECTED:
            raise BusinessRuleError(
                f"Só é possível duplicar uma NF-e rejeitada (atual: {STATUS_LABELS[original.status]})",
                code="invalid_state",
            )

        for _ in range(10):
            try:
                number = self._allocate_number(original.tenant_id, original.series, original.environment)
            except ValueError as exc:
                raise BusinessRuleError(str(exc), code="numbering") from None
            if number == original.number:
                continue
            draft = FiscalDocument(
                id=uuid.uuid4().hex,
                tenant_id=original.tenant_id,
                number=number,
                series=original.series,
                status=DocumentStatus.DRAFT,
                payload_xml=original.payload_xml,
                environment=original.environment,
                duplicated_from=original.id,
            )
            try:
                self._store.save(draft)
            except ValueError:
                logger.warning("Número %d já usado na série %d; reservando outro", number, original.series)
                continue
            return Outcome(draft, message=f"Rascunho {draft.id} criado com número {number}")
        raise BusinessRuleError("Não foi possível reservar um número livre para a série", code="numbering")

    def service_status(self, tenant_id: str) -> StatusServicoResult:
        tenant = self._tenants(tenant_id)
        credential = self._credential(tenant)
        spec = OPERATIONS[Operation.SERVICE_STATUS]
        url = get_endpoint(tenant.uf, spec.service, tenant.ambiente, tenant.contingencia)
        message = build_service_status(get_uf_code(tenant.uf), TP_AMB[tenant.ambiente])
        resp = self._sender(
            url,
            spec.soap_action,
            build_envelope(Operation.SERVICE_STATUS, message),
            credential=credential,
            policy=SEFAZ_QUERY,
        )
        if not resp.success:
            raise TransportError(f"Falha de comunicação com a SEFAZ: {resp.error}", resp.status_code)
        result = parse_service_status_response(resp.body)
        if result is None:
            raise TransportError("Resposta de status da SEFAZ em formato inesperado", resp.status_code)
        return result
