"""HTTPS transport for SOAP calls to SEFAZ.

Every outcome comes back as a TransportResponse; callers branch on data,
never on exceptions. A timeout means the outcome is unknown: the request may
have been processed by SEFAZ.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import requests
from requests_pkcs12 import post as pkcs12_post

from emissor_nfe.config import SEFAZ_TIMEOUT
from emissor_nfe.services.http_retry import (
    DIAGNOSTIC_BODY_LIMIT,
    SEFAZ_SUBMIT,
    RetryableHTTPError,
    RetryPolicy,
    check_status,
    retry_call,
)
from emissor_nfe.utils.certificate import TransportCredential

logger = logging.getLogger(__name__)

TIMEOUT_STATUS = 408


@dataclass(frozen=True)
class TransportResponse:
    success: bool
    status_code: int
    body: str = ""
    error: str | None = None

    @property
    def timed_out(self) -> bool:
        return self.error == "timeout"


def _headers(soap_action: str) -> dict[str, str]:
    return {
        "Content-Type": f'application/soap+xml; charset=utf-8; action="{soap_action}"',
        "SOAPAction": soap_action,
    }


def send(
    endpoint_url: str,
    soap_action: str,
    envelope_xml: str,
    timeout: float = SEFAZ_TIMEOUT,
    credential: TransportCredential | None = None,
    policy: RetryPolicy = SEFAZ_SUBMIT,
    *,
    sleep_func: Callable[[float], object] | None = None,
) -> TransportResponse:
    """POST *envelope_xml* to *endpoint_url* and capture the raw response.

    With a *credential* the client certificate is presented in the TLS
    handshake (mTLS). Without one the call goes out over plain TLS, which
    most SEFAZ authorizers refuse at the handshake.
    """
    headers = _headers(soap_action)
    data = envelope_xml.encode("utf-8")

    if credential is None:
        logger.warning(
            "Enviando para %s sem certificado cliente (TLS simples); "
            "autorizadores que exigem mTLS vão recusar a conexão",
            endpoint_url,
        )

    def _do_post():
        if credential is not None:
            resp = pkcs12_post(
                endpoint_url,
                data=data,
                headers=headers,
                timeout=timeout,
                pkcs12_data=credential.pfx_data,
                pkcs12_password=credential.password,
            )
        else:
            resp = requests.post(endpoint_url, data=data, headers=headers, timeout=timeout)
        return check_status(resp, policy, "SEFAZ")

    try:
        resp = retry_call(_do_post, policy, sleep_func=sleep_func)
    except requests.exceptions.Timeout:
        logger.error("Timeout (%ss) em %s — resultado desconhecido", timeout, endpoint_url)
        return TransportResponse(success=False, status_code=TIMEOUT_STATUS, error="timeout")
    except RetryableHTTPError as exc:
        logger.error("SEFAZ indisponível (%d) em %s", exc.status_code, endpoint_url)
        return TransportResponse(
            success=False, status_code=exc.status_code, body=exc.body, error=f"http_{exc.status_code}"
        )
    except requests.exceptions.ConnectionError as exc:
        logger.error("Falha de conexão com %s: %s", endpoint_url, exc)
        return TransportResponse(success=False, status_code=0, error=f"connection_error: {exc}")
    except requests.exceptions.RequestException as exc:
        logger.error("Erro HTTP em %s: %s", endpoint_url, exc)
        return TransportResponse(success=False, status_code=0, error=f"request_error: {exc}")
    except ValueError as exc:
        # requests_pkcs12 raises ValueError when the bundle cannot be loaded
        logger.error("Certificado cliente inválido para %s: %s", endpoint_url, exc)
        return TransportResponse(success=False, status_code=0, error=f"credential_error: {exc}")

    body = resp.text or ""
    if not resp.ok:
        body = body[:DIAGNOSTIC_BODY_LIMIT]
        logger.error("SEFAZ respondeu HTTP %d em %s: %s", resp.status_code, endpoint_url, body)
        return TransportResponse(
            success=False, status_code=resp.status_code, body=body, error=f"http_{resp.status_code}"
        )
    return TransportResponse(success=True, status_code=resp.status_code, body=body)
