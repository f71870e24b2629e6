from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "emissor-nfe"
KEYRING_SERVICE = "emissor-nfe"

CONFIG_DIR_ENV = "EMISSOR_NFE_CONFIG_DIR"
DATA_DIR_ENV = "EMISSOR_NFE_DATA_DIR"


def _user_dir(kind: str) -> Path:
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def _fallbacks(default_subdir: str, kind: str) -> tuple[Path, Path]:
    """Directories tried when no env var is set: dev repo layout, then platformdirs."""
    # src/emissor_nfe/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    return project_root / default_subdir, _user_dir(kind)


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory: env var, else the first existing fallback, else the platform dir."""
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    return next((p for p in _fallbacks(default_subdir, kind) if p.is_dir()), _user_dir(kind))


def _existing_config_dir() -> Path | None:
    """Config dir holding a .env, resolved before that .env is loaded.

    None when only a platform dir that does not exist yet would match.
    """
    from_env = os.environ.get(CONFIG_DIR_ENV)
    if from_env:
        return Path(from_env)
    return next((p for p in _fallbacks("config", "config") if p.is_dir()), None)


# cwd .env first; the config dir .env never overrides it
load_dotenv()
_cfg_dir = _existing_config_dir()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir(CONFIG_DIR_ENV, "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir(DATA_DIR_ENV, "data", kind="data")


NFE_NS = "http://www.portalfiscal.inf.br/nfe"
WSDL_NS = "http://www.portalfiscal.inf.br/nfe/wsdl"
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"

NFE_VERSION = "4.00"
EVENT_VERSION = "1.00"

BRT = timezone(timedelta(hours=-3))

TP_AMB = {"producao": "1", "homologacao": "2"}

SEFAZ_TIMEOUT = 60
GATEWAY_TIMEOUT = 30

# Upper bound for keeping a decoded certificate in memory
CREDENTIAL_TTL = 3600

# How long a correction request waits for another in-flight call on the same document
GUARD_WAIT_TIMEOUT = 90

GATEWAY_URLS = {
    "homologacao": "https://homologacao.focusnfe.com.br",
    "producao": "https://api.focusnfe.com.br",
}


# --- Keyring (one entry per tenant under the app's service name) ---


def _keyring(method: str, tenant_id: str, *args: str) -> tuple[bool, str | None]:
    """Call ``keyring.<method>``; returns (ok, value).

    Any failure (keyring missing, no backend, dbus errors, locked
    collection) is reported as ``(False, None)``.
    """
    try:
        import keyring

        return True, getattr(keyring, method)(KEYRING_SERVICE, tenant_id, *args)
    except Exception:
        return False, None


def _get_keyring_password(tenant_id: str) -> str | None:
    return _keyring("get_password", tenant_id)[1]


def _set_keyring_password(tenant_id: str, password: str) -> bool:
    return _keyring("set_password", tenant_id, password)[0]


def _delete_keyring_password(tenant_id: str) -> bool:
    return _keyring("delete_password", tenant_id)[0]


# --- Secrets ---


def get_cert_password(tenant_id: str) -> str:
    """Return the certificate password for a tenant.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is None:
        pwd = _get_keyring_password(tenant_id)
    if pwd is None:
        raise KeyError("CERT_PFX_PASSWORD")
    return pwd


def get_gateway_token() -> str:
    """Return the gateway API token from GATEWAY_TOKEN. Raises KeyError if unset."""
    return os.environ["GATEWAY_TOKEN"]


# --- Tenant YAML ---


def load_yaml(path: Path) -> dict:
    return yaml.safe_load(path.read_text())


def _tenant_path(tenant_id: str) -> Path:
    return get_config_dir() / "tenants" / f"{tenant_id}.yaml"


def load_tenant(tenant_id: str) -> dict:
    """Raw tenant settings from config/tenants/<id>.yaml. FileNotFoundError if absent."""
    return load_yaml(_tenant_path(tenant_id))


def list_tenants() -> list[str]:
    tenants_dir = get_config_dir() / "tenants"
    return sorted(f.stem for f in tenants_dir.glob("*.yaml")) if tenants_dir.is_dir() else []


def get_issued_dir(env: str) -> Path:
    """Where authorized nfeProc XML files are written, per environment."""
    return get_data_dir() / env / "issued"
