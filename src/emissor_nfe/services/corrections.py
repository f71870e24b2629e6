"""CC-e (carta de correção) management.

Sequence numbers come from the stored letters, read inside the per-document
guard, so concurrent requests for one document are numbered 1, 2, 3... with
no gaps. A letter SEFAZ refuses is never stored and does not use up one of
the 20 slots. A letter whose answer was lost is stored as ``pending`` and
holds its sequence until a resend settles it: a 573 (duplicate event) means
the first send was registered.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

from emissor_nfe.config import BRT, GUARD_WAIT_TIMEOUT
from emissor_nfe.models.document import CorrectionLetter, DocumentStatus, FiscalDocument, LetterStatus
from emissor_nfe.services.error_classifier import ClassifiedError, classify
from emissor_nfe.services.event_channel import EventChannel, failure_message
from emissor_nfe.services.exceptions import BusinessRuleError
from emissor_nfe.services.lifecycle import STATUS_LABELS, ChannelFactory, TenantLoader
from emissor_nfe.utils.store import DocumentStore

logger = logging.getLogger(__name__)

MIN_TEXT_LEN = 15
MAX_TEXT_LEN = 1000
MAX_LETTERS = 20

# Fields a CC-e may not change (Ajuste SINIEF 01/07). Advisory only.
_FORBIDDEN_TOPICS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\bvalor(?:es)?\b|\bpre[çc]os?\b|\bdesconto|\bfrete\b|\btotal\b", re.IGNORECASE),
        "Valores, preços e totais não podem ser corrigidos por CC-e",
    ),
    (
        re.compile(r"\bquantidades?\b|\bqtde?\b", re.IGNORECASE),
        "Quantidades não podem ser corrigidas por CC-e",
    ),
    (
        re.compile(
            r"\bncm\b|\bcfop\b|\bcst\b|\bcsosn\b|\bal[íi]quota|\bbase\s+de\s+c[áa]lculo|\bicms\b|\bipi\b",
            re.IGNORECASE,
        ),
        "Códigos e variáveis de tributação (NCM, CFOP, CST, alíquotas, base de cálculo) não podem ser corrigidos por CC-e",
    ),
    (
        re.compile(r"descri[çc][ãa]o\s+do\s+(?:produto|item)|\bnome\s+do\s+produto", re.IGNORECASE),
        "A descrição dos produtos não pode ser corrigida por CC-e",
    ),
    (
        re.compile(r"natureza\s+da\s+opera[çc][ãa]o|c[óo]digo\s+da\s+opera[çc][ãa]o", re.IGNORECASE),
        "A natureza/código da operação não pode ser corrigida por CC-e",
    ),
    (
        re.compile(r"data\s+de\s+(?:emiss[ãa]o|sa[íi]da)", re.IGNORECASE),
        "A data de emissão ou de saída não pode ser corrigida por CC-e",
    ),
    (
        re.compile(r"(?:trocar|alterar|mudar|substituir)\s+(?:o\s+)?(?:destinat[áa]rio|remetente)", re.IGNORECASE),
        "A CC-e não pode mudar o remetente ou o destinatário",
    ),
)


@dataclass(frozen=True)
class CorrectionOutcome:
    document: FiscalDocument
    letter: CorrectionLetter | None = None
    classified_errors: tuple[ClassifiedError, ...] = field(default_factory=tuple)
    error: str | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)
    unknown: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def correction_guidance(text: str) -> list[str]:
    """Warn when *text* seems to touch fields a CC-e cannot change."""
    return [message for pattern, message in _FORBIDDEN_TOPICS if pattern.search(text or "")]


class CorrectionManager:
    def __init__(
        self,
        store: DocumentStore,
        tenants: TenantLoader,
        channels: ChannelFactory,
        *,
        guard_timeout: float = GUARD_WAIT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tenants = tenants
        self._channels = channels
        self._guard_timeout = guard_timeout
        self._clock = clock or (lambda: datetime.now(BRT))

    def _now(self) -> str:
        return self._clock().isoformat(timespec="seconds")

    def _require_authorized(self, document_id: str) -> FiscalDocument:
        doc = self._store.get(document_id)
        if doc is None:
            raise BusinessRuleError(f"NF-e não encontrada: {document_id}", code="not_found")
        if doc.status is not DocumentStatus.AUTHORIZED:
            raise BusinessRuleError(
                f"CC-e só pode ser emitida para NF-e autorizada (atual: {STATUS_LABELS[doc.status]})",
                code="invalid_state",
            )
        return doc

    def _check_capacity(self, document_id: str) -> None:
        if len(self._store.list_corrections(document_id)) >= MAX_LETTERS:
            raise BusinessRuleError(
                f"Limite de {MAX_LETTERS} cartas de correção atingido para a NF-e {document_id}",
                code="limit_reached",
            )

    def _settle_pending(self, doc: FiscalDocument, channel: EventChannel) -> None:
        """Resend every pending letter with its own sequence and text.

        Must run inside the submission guard. Raises ``unconfirmed_outcome``
        while SEFAZ still cannot be reached, since numbering past an
        unsettled letter could leave a gap.
        """
        for letter in self._store.list_corrections(doc.id):
            if letter.status is not LetterStatus.PENDING:
                continue
            result = channel.send_correction(doc, letter.sequence, letter.text)
            if result.registered or result.already_registered:
                confirmed = replace(
                    letter,
                    status=LetterStatus.AUTHORIZED,
                    protocol=result.protocol if result.registered else letter.protocol,
                    registered_at=result.registered_at or letter.registered_at or self._now(),
                )
                self._store.update_correction(confirmed)
                logger.info("CC-e %d da NF-e %s confirmada (%s)", letter.sequence, doc.id, result.status_code)
            elif result.unknown:
                raise BusinessRuleError(
                    f"CC-e {letter.sequence} da NF-e {doc.id} ainda sem confirmação da SEFAZ: "
                    f"{failure_message(result)}",
                    code="unconfirmed_outcome",
                )
            else:
                self._store.delete_correction(doc.id, letter.sequence)
                logger.warning(
                    "CC-e %d da NF-e %s não foi registrada (%s); sequência liberada",
                    letter.sequence, doc.id, failure_message(result),
                )

    def add_correction(self, document_id: str, text: str) -> CorrectionOutcome:
        text = (text or "").strip()
        self._require_authorized(document_id)
        self._check_capacity(document_id)
        if not MIN_TEXT_LEN <= len(text) <= MAX_TEXT_LEN:
            raise BusinessRuleError(
                f"Texto da correção deve ter entre {MIN_TEXT_LEN} e {MAX_TEXT_LEN} caracteres "
                f"(atual: {len(text)})",
                code="invalid_length",
            )
        warnings = tuple(correction_guidance(text))

        with self._store.submission_guard(document_id, timeout=self._guard_timeout):
            doc = self._require_authorized(document_id)
            channel = self._channels(self._tenants(doc.tenant_id))
            self._settle_pending(doc, channel)
            self._check_capacity(document_id)
            sequence = self._store.max_sequence(document_id) + 1
            result = channel.send_correction(doc, sequence, text)
            now = self._now()

            if result.unknown:
                raw = failure_message(result)
                letter = self._store.add_correction(
                    CorrectionLetter(
                        document_id=document_id,
                        sequence=sequence,
                        text=text,
                        status=LetterStatus.PENDING,
                        created_at=now,
                    )
                )
                logger.warning("CC-e %d da NF-e %s sem resposta; mantida pendente: %s", sequence, document_id, raw)
                return CorrectionOutcome(doc, letter=letter, error=raw, warnings=warnings, unknown=True)

            if not result.registered:
                raw = failure_message(result)
                logger.warning("CC-e %d da NF-e %s recusada: %s", sequence, document_id, raw)
                return CorrectionOutcome(
                    doc, classified_errors=tuple(classify(raw)), error=raw, warnings=warnings
                )

            letter = self._store.add_correction(
                CorrectionLetter(
                    document_id=document_id,
                    sequence=sequence,
                    text=text,
                    status=LetterStatus.AUTHORIZED,
                    protocol=result.protocol,
                    registered_at=result.registered_at or now,
                    created_at=now,
                )
            )
            logger.info("CC-e %d da NF-e %s registrada: protocolo %s", sequence, document_id, letter.protocol)
            return CorrectionOutcome(doc, letter=letter, warnings=warnings)

    def reconcile(self, document_id: str) -> list[CorrectionLetter]:
        """Settle pending letters now and return the document's letters."""
        with self._store.submission_guard(document_id, timeout=self._guard_timeout):
            doc = self._require_authorized(document_id)
            if any(letter.status is LetterStatus.PENDING for letter in self._store.list_corrections(document_id)):
                self._settle_pending(doc, self._channels(self._tenants(doc.tenant_id)))
        return self._store.list_corrections(document_id)

    def list_corrections(self, document_id: str) -> list[CorrectionLetter]:
        return self._store.list_corrections(document_id)
