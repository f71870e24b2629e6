"""NF-e number counters, one per tenant, series and environment.

Stored in ``<data>/sequence.json`` as ``{"<tenant>:<serie>:<env>": last_used}``.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock

from emissor_nfe import config as _config

# nNF has 9 digits
MAX_NUMBER = 999_999_999


def _sequence_file() -> Path:
    return _config.get_data_dir() / "sequence.json"


def _key(tenant_id: str, serie: int, env: str) -> str:
    return f"{tenant_id}:{serie}:{env}"


@contextmanager
def _counters() -> Iterator[dict[str, int]]:
    """Yield the counters under an exclusive lock; changes are written back atomically."""
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(sf.with_suffix(".lock")):
        data: dict[str, int] = json.loads(sf.read_text()) if sf.exists() else {}
        before = dict(data)
        yield data
        if data != before:
            tmp = sf.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
            os.replace(tmp, sf)


def _update(tenant_id: str, serie: int, env: str, step: Callable[[int], int]) -> int:
    with _counters() as data:
        key = _key(tenant_id, serie, env)
        value = step(data.get(key, 0))
        if value > MAX_NUMBER:
            raise ValueError(f"Série {serie} esgotada para o tenant {tenant_id} ({env})")
        data[key] = value
        return value


def current_number(tenant_id: str, serie: int, env: str = "homologacao") -> int:
    with _counters() as data:
        return data.get(_key(tenant_id, serie, env), 0)


def peek_next_number(tenant_id: str, serie: int, env: str = "homologacao") -> int:
    """Next number without reserving it."""
    return current_number(tenant_id, serie, env) + 1


def next_number(tenant_id: str, serie: int, env: str = "homologacao") -> int:
    """Reserve and return the next NF-e number for a tenant/series/env."""
    return _update(tenant_id, serie, env, lambda last: last + 1)


def advance_to(value: int, tenant_id: str, serie: int, env: str = "homologacao") -> int:
    """Mark every number up to *value* as used. Never moves the counter back."""
    return _update(tenant_id, serie, env, lambda last: max(last, value))
