"""Public entry points of the NF-e engine.

Every call returns an OperationResult. Expected failures (business rules,
SEFAZ rejections, certificate and transport problems) come back as data;
only a missing required argument raises.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from emissor_nfe import config as _config
from emissor_nfe.endpoints import get_authorizer
from emissor_nfe.models.tenant import Tenant
from emissor_nfe.services import transport
from emissor_nfe.services.corrections import CorrectionManager
from emissor_nfe.services.error_classifier import ClassifiedError, classify
from emissor_nfe.services.event_channel import EventChannel, build_event_channel
from emissor_nfe.services.exceptions import BusinessRuleError, CredentialError, TransportError
from emissor_nfe.services.lifecycle import InvoiceLifecycle, Outcome
from emissor_nfe.utils import sequence
from emissor_nfe.utils.certificate import TransportCredential
from emissor_nfe.utils.credential_cache import CredentialCache
from emissor_nfe.utils.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    success: bool
    data: dict[str, Any] | None = None
    classified_errors: list[ClassifiedError] = field(default_factory=list)
    error: str | None = None
    code: str | None = None


def _require(name: str, value: object, *, allow_empty: bool = False) -> None:
    if value is None or (not allow_empty and isinstance(value, str) and not value.strip()):
        raise ValueError(f"{name} is required")


def load_tenant(tenant_id: str) -> Tenant:
    """Load a tenant from config/tenants/<id>.yaml."""
    try:
        data = _config.load_tenant(tenant_id)
    except FileNotFoundError:
        known = ", ".join(_config.list_tenants()) or "nenhum"
        raise BusinessRuleError(
            f"Tenant não configurado: {tenant_id} (configurados: {known})", code="tenant_not_found"
        ) from None
    try:
        tenant = Tenant.from_dict(tenant_id, data)
        get_authorizer(tenant.uf, tenant.contingencia)
    except (KeyError, TypeError, ValueError) as exc:
        raise BusinessRuleError(
            f"Configuração inválida do tenant {tenant_id}: {exc}", code="tenant_invalid"
        ) from None
    return tenant


class FiscalService:
    def __init__(
        self,
        store: DocumentStore | None = None,
        *,
        tenants: Callable[[str], Tenant] = load_tenant,
        credential_cache: CredentialCache | None = None,
        sender: Callable[..., transport.TransportResponse] = transport.send,
        channels: Callable[[Tenant], EventChannel] | None = None,
        allocate_number: Callable[[str, int, str], int] = sequence.next_number,
        **lifecycle_options: Any,
    ) -> None:
        self.store = store or DocumentStore()
        self._tenants = tenants
        self._cache = credential_cache or CredentialCache()
        self._sender = sender
        channels = channels or (lambda tenant: build_event_channel(tenant, self.credential_for, sender))
        self.lifecycle = InvoiceLifecycle(
            self.store,
            tenants,
            self.credential_for,
            channels,
            sender=sender,
            allocate_number=allocate_number,
            **lifecycle_options,
        )
        self.corrections = CorrectionManager(
            self.store,
            tenants,
            channels,
            **{k: v for k, v in lifecycle_options.items() if k in ("guard_timeout", "clock")},
        )

    # --- credentials ---

    def credential_for(self, tenant: Tenant) -> TransportCredential:
        """Decoded certificate for *tenant*, cached per tenant."""
        try:
            pfx_data = Path(tenant.cert_path).expanduser().read_bytes()
        except OSError as exc:
            raise CredentialError(f"Certificado não encontrado: {tenant.cert_path}") from exc
        try:
            password = _config.get_cert_password(tenant.id)
        except KeyError:
            raise CredentialError(
                "Senha do certificado não configurada (CERT_PFX_PASSWORD ou keychain)"
            ) from None
        return self._cache.get(tenant.id, pfx_data, password)

    # --- result conversion ---

    def _run(self, action: str, subject: str, func: Callable[[], Any]) -> Any | OperationResult:
        try:
            return func()
        except BusinessRuleError as exc:
            return OperationResult(False, error=str(exc), code=exc.code)
        except CredentialError as exc:
            logger.error("%s %s: erro de certificado: %s", action, subject, exc)
            return OperationResult(
                False, error=f"Certificado digital: {exc}", code=type(exc).__name__
            )
        except TransportError as exc:
            logger.error("%s %s: %s", action, subject, exc)
            return OperationResult(False, error=str(exc), code="transport")

    @staticmethod
    def _from_outcome(outcome: Outcome) -> OperationResult:
        data = outcome.document.to_dict()
        data.pop("authorized_xml", None)
        data.pop("payload_xml", None)
        if outcome.message:
            data["message"] = outcome.message
        code = None
        if outcome.error:
            code = "unknown_outcome" if outcome.unknown else "rejected"
        return OperationResult(
            outcome.ok,
            data=data,
            classified_errors=list(outcome.classified_errors),
            error=outcome.error,
            code=code,
        )

    def _lifecycle_call(self, action: str, document_id: str, func: Callable[[], Outcome]) -> OperationResult:
        result = self._run(action, document_id, func)
        return result if isinstance(result, OperationResult) else self._from_outcome(result)

    # --- public contract ---

    def submit_invoice(self, document_id: str) -> OperationResult:
        _require("document_id", document_id)
        return self._lifecycle_call("submit", document_id, lambda: self.lifecycle.submit(document_id))

    def poll_invoice_status(self, document_id: str) -> OperationResult:
        _require("document_id", document_id)
        return self._lifecycle_call("poll", document_id, lambda: self.lifecycle.poll_status(document_id))

    def cancel_invoice(self, document_id: str, reason: str) -> OperationResult:
        _require("document_id", document_id)
        _require("reason", reason, allow_empty=True)
        return self._lifecycle_call(
            "cancel", document_id, lambda: self.lifecycle.cancel(document_id, reason)
        )

    def duplicate_invoice(self, document_id: str) -> OperationResult:
        _require("document_id", document_id)
        return self._lifecycle_call(
            "duplicate", document_id, lambda: self.lifecycle.duplicate_as_new(document_id)
        )

    def reopen_invoice(self, document_id: str) -> OperationResult:
        _require("document_id", document_id)
        return self._lifecycle_call("reopen", document_id, lambda: self.lifecycle.reopen_draft(document_id))

    def add_correction_letter(self, document_id: str, text: str) -> OperationResult:
        _require("document_id", document_id)
        _require("text", text, allow_empty=True)
        outcome = self._run(
            "cc-e", document_id, lambda: self.corrections.add_correction(document_id, text)
        )
        if isinstance(outcome, OperationResult):
            return outcome
        data: dict[str, Any] = {"document_id": document_id, "warnings": list(outcome.warnings)}
        if outcome.letter is not None:
            data.update(outcome.letter.to_dict())
        return OperationResult(
            outcome.ok,
            data=data,
            classified_errors=list(outcome.classified_errors),
            error=outcome.error,
            code=None if outcome.ok else ("unknown_outcome" if outcome.unknown else "rejected"),
        )

    def reconcile_correction_letters(self, document_id: str) -> OperationResult:
        """Resend pending CC-e letters so each one ends registered or freed."""
        _require("document_id", document_id)
        letters = self._run("cc-e", document_id, lambda: self.corrections.reconcile(document_id))
        if isinstance(letters, OperationResult):
            return letters
        return OperationResult(True, data={"letters": [letter.to_dict() for letter in letters]})

    def list_correction_letters(self, document_id: str) -> OperationResult:
        _require("document_id", document_id)
        letters = self.corrections.list_corrections(document_id)
        return OperationResult(True, data={"letters": [letter.to_dict() for letter in letters]})

    def classify_failure(self, raw_message: str) -> OperationResult:
        if raw_message is None:
            raise ValueError("raw_message is required")
        errors = classify(raw_message)
        return OperationResult(True, data={"count": len(errors)}, classified_errors=errors)

    def service_status(self, tenant_id: str) -> OperationResult:
        _require("tenant_id", tenant_id)
        result = self._run("status", tenant_id, lambda: self.lifecycle.service_status(tenant_id))
        if isinstance(result, OperationResult):
            return result
        return OperationResult(
            result.online,
            data=asdict(result),
            error=None if result.online else f"[{result.status_code}] {result.reason}",
            code=None if result.online else "service_unavailable",
        )
