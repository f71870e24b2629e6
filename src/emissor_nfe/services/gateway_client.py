"""REST client for a third-party NF-e gateway (Focus NFe API v2).

Deployments that delegate SEFAZ communication to the gateway send
corrections and cancellations here, and read the rendered DANFE and XML
links back from it. The gateway's error text is returned
verbatim so the error classifier can read it.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests

from emissor_nfe.config import GATEWAY_TIMEOUT, GATEWAY_URLS
from emissor_nfe.models.tenant import Tenant
from emissor_nfe.services.http_retry import GATEWAY_READ, RetryableHTTPError, check_status, retry_call

logger = logging.getLogger(__name__)

CANCEL_MIN_LEN = 15
CANCEL_MAX_LEN = 255


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    http_status: int | None = None

    @property
    def unknown(self) -> bool:
        """The request went out but its effect is unknown (network failure, timeout, 5xx)."""
        if self.success or self.http_status is None:
            return False
        return self.http_status in (0, 408) or self.http_status >= 500


def _format_erros(data: dict) -> str | None:
    """Best-effort extraction of the gateway's error text."""
    erros = data.get("erros")
    if isinstance(erros, list) and erros:
        parts = []
        for e in erros:
            if isinstance(e, dict):
                campo = e.get("campo")
                msg = str(e.get("mensagem", ""))
                parts.append(f"{campo}: {msg}" if campo else msg)
            else:
                parts.append(str(e))
        return "; ".join(parts)
    for key in ("mensagem", "mensagem_sefaz"):
        val = data.get(key)
        if val:
            return str(val)
    return None


class GatewayClient:
    def __init__(
        self,
        token: str,
        ambiente: str = "homologacao",
        base_url: str | None = None,
        timeout: float = GATEWAY_TIMEOUT,
    ) -> None:
        self._auth = (token, "")
        self._base_url = (base_url or GATEWAY_URLS[ambiente]).rstrip("/")
        self._timeout = timeout

    def _url(self, ref: str, suffix: str = "") -> str:
        return f"{self._base_url}/v2/nfe/{quote(ref, safe='')}{suffix}"

    def _request(self, method: str, url: str, payload: dict | None = None, *, retry: bool = False) -> GatewayResult:
        logger.info("[gateway] %s %s", method, url)

        def _do():
            resp = requests.request(method, url, json=payload, auth=self._auth, timeout=self._timeout)
            return check_status(resp, GATEWAY_READ, "Gateway") if retry else resp

        try:
            resp = retry_call(_do, GATEWAY_READ) if retry else _do()
        except RetryableHTTPError as exc:
            return GatewayResult(False, error=f"HTTP {exc.status_code}", http_status=exc.status_code)
        except requests.exceptions.Timeout:
            return GatewayResult(False, error="timeout", http_status=408)
        except requests.exceptions.RequestException as exc:
            logger.error("[gateway] Falha em %s %s: %s", method, url, exc)
            return GatewayResult(False, error=str(exc), http_status=0)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"resposta": data}

        logger.debug("[gateway] HTTP %d: %s", resp.status_code, json.dumps(data, ensure_ascii=False)[:500])
        if not resp.ok:
            error = _format_erros(data) or f"HTTP {resp.status_code}"
            return GatewayResult(False, data=data, error=error, http_status=resp.status_code)
        return GatewayResult(True, data=data, http_status=resp.status_code)

    def send_correction(self, ref: str, text: str) -> GatewayResult:
        """POST a CC-e; SEFAZ's answer comes back in status_sefaz/mensagem_sefaz."""
        return self._request("POST", self._url(ref, "/carta_correcao"), {"correcao": text})

    def cancel(self, ref: str, justification: str) -> GatewayResult:
        if not CANCEL_MIN_LEN <= len(justification) <= CANCEL_MAX_LEN:
            return GatewayResult(
                False,
                error=f"Justificativa deve ter entre {CANCEL_MIN_LEN} e {CANCEL_MAX_LEN} caracteres",
            )
        return self._request("DELETE", self._url(ref), {"justificativa": justification})

    def get_status(self, ref: str) -> GatewayResult:
        return self._request("GET", self._url(ref), retry=True)

    def document_urls(self, data: dict) -> dict[str, str]:
        """DANFE and XML links from a get_status answer, made absolute."""
        urls = {}
        for name, key in (("danfe", "caminho_danfe"), ("xml", "caminho_xml_nota_fiscal")):
            path = data.get(key)
            if path:
                urls[name] = path if str(path).startswith("http") else f"{self._base_url}{path}"
        return urls


def build_gateway_client(tenant: Tenant) -> GatewayClient | None:
    """Client for the tenant's ``gateway`` section; None when it talks to SEFAZ directly."""
    if tenant.gateway is None:
        return None
    token = os.environ.get(tenant.gateway.token_env, "")
    if not token:
        logger.warning("Token do gateway ausente (%s) para tenant %s", tenant.gateway.token_env, tenant.id)
    return GatewayClient(token, tenant.ambiente, tenant.gateway.base_url)
