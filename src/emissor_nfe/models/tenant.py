from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class GatewaySettings:
    """Third-party gateway used instead of talking to SEFAZ directly."""

    provider: str = "focusnfe"
    base_url: str | None = None
    token_env: str = "GATEWAY_TOKEN"


@dataclass(frozen=True)
class Tenant:
    """Emitter (emitente) — the company issuing NF-e through this engine."""

    id: str
    cnpj: str
    razao_social: str
    uf: str
    ambiente: str
    serie: int
    cert_path: str
    contingencia: bool = False
    gateway: GatewaySettings | None = None

    @classmethod
    def from_dict(cls, tenant_id: str, d: dict) -> Tenant:
        """Create a Tenant from a YAML-loaded dict, applying defaults for optional fields."""
        gw = d.get("gateway")
        return cls(
            id=tenant_id,
            cnpj="".join(ch for ch in str(d["cnpj"]) if ch.isdigit()),
            razao_social=d["razao_social"],
            uf=str(d["uf"]).upper(),
            ambiente=d.get("ambiente", "homologacao"),
            serie=int(d.get("serie", 1)),
            cert_path=d["cert_path"],
            contingencia=bool(d.get("contingencia", False)),
            gateway=GatewaySettings(**gw) if gw else None,
        )
