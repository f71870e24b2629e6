"""Local document store — FiscalDocument and CorrectionLetter tables.

Stands in for the external database: JSON files in the data dir, each
read-modify-write done under an exclusive file lock. Per-document lock files
implement the submission guard.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from emissor_nfe import config as _config
from emissor_nfe.models.document import CorrectionLetter, FiscalDocument
from emissor_nfe.services.exceptions import SubmissionInFlight

logger = logging.getLogger(__name__)


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


class DocumentStore:
    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir

    @property
    def base_dir(self) -> Path:
        return self._base_dir if self._base_dir is not None else _config.get_data_dir()

    @property
    def documents_path(self) -> Path:
        return self.base_dir / "documents.json"

    @property
    def corrections_path(self) -> Path:
        return self.base_dir / "corrections.json"

    # --- file plumbing ---

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        """Hold an exclusive file lock during read-modify-write of *path*."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(path.with_suffix(".lock")):
            yield

    def _load(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, ValueError):
            _backup_corrupt(path)
            return []

    def _save(self, path: Path, entries: list[dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, path)

    # --- documents ---

    def get(self, document_id: str) -> FiscalDocument | None:
        with self._locked(self.documents_path):
            entries = self._load(self.documents_path)
        entry = next((e for e in entries if e.get("id") == document_id), None)
        return FiscalDocument.from_dict(entry) if entry else None

    def list_documents(self, tenant_id: str | None = None) -> list[FiscalDocument]:
        with self._locked(self.documents_path):
            entries = self._load(self.documents_path)
        if tenant_id:
            entries = [e for e in entries if e.get("tenant_id") == tenant_id]
        return [FiscalDocument.from_dict(e) for e in entries]

    def save(self, document: FiscalDocument) -> FiscalDocument:
        """Insert or replace a document.

        Raises ValueError when tenant+number+series collides with another
        document, or when an existing document's number/series would change.
        """
        with self._locked(self.documents_path):
            entries = self._load(self.documents_path)
            for e in entries:
                if e.get("id") == document.id:
                    continue
                if (
                    e.get("tenant_id") == document.tenant_id
                    and e.get("number") == document.number
                    and e.get("series") == document.series
                ):
                    raise ValueError(
                        f"NF-e {document.number}/série {document.series} já existe "
                        f"para o tenant {document.tenant_id}"
                    )

            idx = next((i for i, e in enumerate(entries) if e.get("id") == document.id), None)
            if idx is None:
                entries.append(document.to_dict())
            else:
                current = entries[idx]
                if (current.get("number"), current.get("series")) != (
                    document.number,
                    document.series,
                ):
                    raise ValueError(f"Número/série do documento {document.id} não podem mudar")
                entries[idx] = document.to_dict()
            self._save(self.documents_path, entries)
        return document

    # --- correction letters ---

    def list_corrections(self, document_id: str) -> list[CorrectionLetter]:
        with self._locked(self.corrections_path):
            entries = self._load(self.corrections_path)
        letters = [CorrectionLetter.from_dict(e) for e in entries if e.get("document_id") == document_id]
        return sorted(letters, key=lambda letter: letter.sequence)

    def max_sequence(self, document_id: str) -> int:
        return max((letter.sequence for letter in self.list_corrections(document_id)), default=0)

    def add_correction(self, letter: CorrectionLetter) -> CorrectionLetter:
        """Insert a letter; (document_id, sequence) is unique."""
        with self._locked(self.corrections_path):
            entries = self._load(self.corrections_path)
            for e in entries:
                if e.get("document_id") == letter.document_id and e.get("sequence") == letter.sequence:
                    raise ValueError(
                        f"CC-e sequência {letter.sequence} já existe para {letter.document_id}"
                    )
            entries.append(letter.to_dict())
            self._save(self.corrections_path, entries)
        return letter

    def _index_of(self, entries: list[dict[str, Any]], document_id: str, sequence: int) -> int:
        for i, e in enumerate(entries):
            if e.get("document_id") == document_id and e.get("sequence") == sequence:
                return i
        raise ValueError(f"CC-e sequência {sequence} não encontrada para {document_id}")

    def update_correction(self, letter: CorrectionLetter) -> CorrectionLetter:
        """Replace the stored letter with the same (document_id, sequence)."""
        with self._locked(self.corrections_path):
            entries = self._load(self.corrections_path)
            entries[self._index_of(entries, letter.document_id, letter.sequence)] = letter.to_dict()
            self._save(self.corrections_path, entries)
        return letter

    def delete_correction(self, document_id: str, sequence: int) -> None:
        with self._locked(self.corrections_path):
            entries = self._load(self.corrections_path)
            del entries[self._index_of(entries, document_id, sequence)]
            self._save(self.corrections_path, entries)

    # --- submission guard ---

    def _guard_path(self, document_id: str) -> Path:
        return self.base_dir / "locks" / f"{document_id}.lock"

    @contextmanager
    def submission_guard(self, document_id: str, timeout: float = 0) -> Iterator[None]:
        """Exclusive per-document section around a SEFAZ round trip.

        With ``timeout=0`` a held guard fails immediately with
        SubmissionInFlight. The lock is released on scope exit, and by the OS
        if the process dies.
        """
        path = self._guard_path(document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(path, timeout=timeout)
        try:
            lock.acquire()
        except Timeout:
            raise SubmissionInFlight(document_id) from None
        try:
            yield
        finally:
            lock.release()
