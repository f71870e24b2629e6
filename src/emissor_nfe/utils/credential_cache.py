"""Per-tenant in-memory cache of decoded transport credentials.

PKCS#12 decoding is CPU-bound, so a batch of submissions for one tenant
reuses a single TransportCredential. Entries live until
min(certificate expiry, now + ceiling) and are dropped as soon as the bundle
or password changes.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from emissor_nfe.config import CREDENTIAL_TTL
from emissor_nfe.utils.certificate import TransportCredential, load_credential

logger = logging.getLogger(__name__)


def _fingerprint(pfx_data: bytes, password: str) -> str:
    digest = hashlib.sha256(pfx_data)
    digest.update(b"\x00")
    digest.update(password.encode())
    return digest.hexdigest()


@dataclass(frozen=True)
class _Entry:
    credential: TransportCredential
    fingerprint: str
    expires_at: datetime


class CredentialCache:
    def __init__(
        self,
        ttl_ceiling: float = CREDENTIAL_TTL,
        clock: Callable[[], datetime] | None = None,
        loader: Callable[..., TransportCredential] = load_credential,
    ) -> None:
        self._ceiling = timedelta(seconds=ttl_ceiling)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._loader = loader
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, pfx_data: bytes, password: str) -> TransportCredential:
        """Return the cached credential for *tenant_id*, extracting it if needed.

        Raises the CredentialError family from the extractor (including
        CertificateExpired); failures are never cached.
        """
        now = self._clock()
        fp = _fingerprint(pfx_data, password)
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is not None and entry.fingerprint == fp and entry.expires_at > now:
                return entry.credential
            self._entries.pop(tenant_id, None)

        # Extraction runs outside the lock so other tenants are not blocked
        credential = self._loader(pfx_data, password, now=now)
        expires_at = min(credential.not_after, now + self._ceiling)
        with self._lock:
            self._entries[tenant_id] = _Entry(credential, fp, expires_at)
        logger.debug("Credential cached for tenant %s until %s", tenant_id, expires_at)
        return credential

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._entries.pop(tenant_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, tenant_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(tenant_id)
            return entry is not None and entry.expires_at > self._clock()
