"""Retry policies for SEFAZ SOAP calls and gateway REST calls.

Whether a call may be repeated depends on whether SEFAZ could already have
acted on it, so each call site picks the policy matching its operation.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import requests
from urllib3.exceptions import NewConnectionError

T = TypeVar("T")

logger = logging.getLogger(__name__)

DIAGNOSTIC_BODY_LIMIT = 500


class RetryableHTTPError(requests.exceptions.HTTPError):
    """An HTTP status the active policy treats as transient (429, 502, 503, 504)."""

    def __init__(self, message: str, status_code: int = 0, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]
    retryable_status_codes: frozenset[int] = field(default_factory=frozenset)
    name: str = "http"
    # narrows retryable_exceptions; None retries every one of them
    retry_if: Callable[[Exception], bool] | None = None


_TRANSIENT_STATUS = frozenset({429, 502, 503, 504})


def request_never_sent(exc: Exception) -> bool:
    """True when *exc* proves the request body never left this host.

    Only a connect timeout or a refused/unresolvable connection qualifies.
    requests reports an aborted or reset connection with the same
    ConnectionError class, but by then SEFAZ may already hold the body.
    """
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    if not isinstance(exc, requests.exceptions.ConnectionError) or not exc.args:
        return False
    cause = exc.args[0]
    return isinstance(getattr(cause, "reason", cause), NewConnectionError)


# Submissions and events: only retry when the request never reached SEFAZ.
# Timeouts and dropped connections may mean the batch was received.
SEFAZ_SUBMIT = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
    name="sefaz-envio",
    retry_if=request_never_sent,
)

# Read-only calls (receipt/protocol queries, service status) are idempotent.
SEFAZ_QUERY = RetryPolicy(
    max_attempts=4,
    base_delay=1.0,
    max_delay=15.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        RetryableHTTPError,
    ),
    retryable_status_codes=_TRANSIENT_STATUS,
    name="sefaz-consulta",
)

GATEWAY_READ = RetryPolicy(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        RetryableHTTPError,
    ),
    retryable_status_codes=_TRANSIENT_STATUS,
    name="gateway-consulta",
)


def check_status(resp: requests.Response, policy: RetryPolicy, source: str) -> requests.Response:
    """Raise RetryableHTTPError when *resp* carries a status *policy* retries."""
    if resp.status_code in policy.retryable_status_codes:
        body = (resp.text or "")[:DIAGNOSTIC_BODY_LIMIT]
        raise RetryableHTTPError(f"{source} HTTP {resp.status_code}", status_code=resp.status_code, body=body)
    return resp


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff with jitter; *attempt* 0 is the delay after the first failure."""
    delay = min(policy.base_delay * (policy.backoff_factor**attempt), policy.max_delay)
    spread = delay * policy.jitter
    return max(0.0, delay + random.uniform(-spread, spread))


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] | None = None,
) -> T:
    """Run *func()* under *policy*; the last retryable error is re-raised on exhaustion."""
    sleep = sleep_func or time.sleep
    attempt = 0
    while True:
        try:
            return func()
        except policy.retryable_exceptions as exc:
            attempt += 1
            if policy.retry_if is not None and not policy.retry_if(exc):
                logger.warning("[%s] falha não repetível (%s); sem nova tentativa", policy.name, exc)
                raise
            if attempt >= policy.max_attempts:
                logger.warning("[%s] desistindo após %d tentativas: %s", policy.name, attempt, type(exc).__name__)
                raise
            delay = _calc_delay(attempt - 1, policy)
            logger.warning(
                "[%s] tentativa %d/%d falhou (%s); nova tentativa em %.1fs",
                policy.name,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep(delay)
