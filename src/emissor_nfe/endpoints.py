"""SEFAZ NF-e 4.00 web service endpoints per authorizer.

Each UF is served either by its own authorizer or by SVRS (Sefaz Virtual do
RS). In contingency, SVRS-served states fall back to SVC-RS and the others
to SVC-AN.
"""

from __future__ import annotations

UF_CODES: dict[str, str] = {
    "AC": "12", "AL": "27", "AP": "16", "AM": "13", "BA": "29",
    "CE": "23", "DF": "53", "ES": "32", "GO": "52", "MA": "21",
    "MT": "51", "MS": "50", "MG": "31", "PA": "15", "PB": "25",
    "PR": "41", "PE": "26", "PI": "22", "RJ": "33", "RN": "24",
    "RS": "43", "RO": "11", "RR": "14", "SC": "42", "SP": "35",
    "SE": "28", "TO": "17",
}

_OWN_AUTHORIZERS = frozenset({"AM", "BA", "CE", "GO", "MG", "MS", "MT", "PE", "PR", "RS", "SP"})

UF_AUTHORIZERS: dict[str, str] = {
    uf: (uf if uf in _OWN_AUTHORIZERS else "SVRS") for uf in UF_CODES
}

SERVICES = (
    "NFeAutorizacao",
    "NFeRetAutorizacao",
    "NfeConsultaProtocolo",
    "NfeStatusServico",
    "RecepcaoEvento",
)


def _table(autorizacao: str, ret: str, consulta: str, status: str, evento: str) -> dict[str, str]:
    return dict(zip(SERVICES, (autorizacao, ret, consulta, status, evento), strict=True))


def _svrs_like(host: str) -> dict[str, str]:
    return _table(
        f"https://{host}/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
        f"https://{host}/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
        f"https://{host}/ws/NfeConsulta/NfeConsulta4.asmx",
        f"https://{host}/ws/NfeStatusServico/NfeStatusServico4.asmx",
        f"https://{host}/ws/recepcaoevento/recepcaoevento4.asmx",
    )


def _asmx_dirs(base: str) -> dict[str, str]:
    return _table(
        f"{base}/NFeAutorizacao4/NFeAutorizacao4.asmx",
        f"{base}/NFeRetAutorizacao4/NFeRetAutorizacao4.asmx",
        f"{base}/NFeConsultaProtocolo4/NFeConsultaProtocolo4.asmx",
        f"{base}/NFeStatusServico4/NFeStatusServico4.asmx",
        f"{base}/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx",
    )


def _services4(base: str) -> dict[str, str]:
    return _table(
        f"{base}/NFeAutorizacao4",
        f"{base}/NFeRetAutorizacao4",
        f"{base}/NFeConsultaProtocolo4",
        f"{base}/NFeStatusServico4",
        f"{base}/NFeRecepcaoEvento4",
    )


def _am_mt(base: str) -> dict[str, str]:
    return _table(
        f"{base}/NfeAutorizacao4",
        f"{base}/NfeRetAutorizacao4",
        f"{base}/NfeConsulta4",
        f"{base}/NfeStatusServico4",
        f"{base}/RecepcaoEvento4",
    )


def _sp(host: str) -> dict[str, str]:
    return _table(
        f"https://{host}/ws/nfeautorizacao4.asmx",
        f"https://{host}/ws/nferetautorizacao4.asmx",
        f"https://{host}/ws/nfeconsultaprotocolo4.asmx",
        f"https://{host}/ws/nfestatusservico4.asmx",
        f"https://{host}/ws/nferecepcaoevento4.asmx",
    )


ENDPOINTS: dict[str, dict[str, dict[str, str]]] = {
    "producao": {
        "AM": _am_mt("https://nfe.sefaz.am.gov.br/services2/services"),
        "BA": _asmx_dirs("https://nfe.sefaz.ba.gov.br/webservices"),
        "CE": _services4("https://nfe.sefaz.ce.gov.br/nfe4/services"),
        "GO": _services4("https://nfe.sefaz.go.gov.br/nfe/services"),
        "MG": _services4("https://nfe.fazenda.mg.gov.br/nfe2/services"),
        "MS": _services4("https://nfe.sefaz.ms.gov.br/ws"),
        "MT": _am_mt("https://nfe.sefaz.mt.gov.br/nfews/v2/services"),
        "PE": _services4("https://nfe.sefaz.pe.gov.br/nfe-service/services"),
        "PR": _services4("https://nfe.sefa.pr.gov.br/nfe"),
        "RS": _svrs_like("nfe.sefazrs.rs.gov.br"),
        "SP": _sp("nfe.fazenda.sp.gov.br"),
        "SVRS": _svrs_like("nfe.svrs.rs.gov.br"),
        "SVC-AN": _asmx_dirs("https://www.svc.fazenda.gov.br"),
        "SVC-RS": _svrs_like("nfe.svrs.rs.gov.br"),
    },
    "homologacao": {
        "AM": _am_mt("https://homnfe.sefaz.am.gov.br/services2/services"),
        "BA": _asmx_dirs("https://hnfe.sefaz.ba.gov.br/webservices"),
        "CE": _services4("https://nfeh.sefaz.ce.gov.br/nfe4/services"),
        "GO": _services4("https://homolog.sefaz.go.gov.br/nfe/services"),
        "MG": _services4("https://hnfe.fazenda.mg.gov.br/nfe2/services"),
        "MS": _services4("https://hom.nfe.sefaz.ms.gov.br/ws"),
        "MT": _am_mt("https://homologacao.sefaz.mt.gov.br/nfews/v2/services"),
        "PE": _services4("https://nfehomolog.sefaz.pe.gov.br/nfe-service/services"),
        "PR": _services4("https://homologacao.nfe.sefa.pr.gov.br/nfe"),
        "RS": _svrs_like("nfe-homologacao.sefazrs.rs.gov.br"),
        "SP": _sp("homologacao.nfe.fazenda.sp.gov.br"),
        "SVRS": _svrs_like("nfe-homologacao.svrs.rs.gov.br"),
        "SVC-AN": _asmx_dirs("https://hom.svc.fazenda.gov.br"),
        "SVC-RS": _svrs_like("nfe-homologacao.svrs.rs.gov.br"),
    },
}


def get_authorizer(uf: str, contingencia: bool = False) -> str:
    """Return the authorizer serving *uf* (``SVC-AN``/``SVC-RS`` in contingency)."""
    authorizer = UF_AUTHORIZERS.get(uf.upper())
    if authorizer is None:
        raise ValueError(f"UF não suportada: {uf}")
    if contingencia:
        return "SVC-RS" if authorizer == "SVRS" else "SVC-AN"
    return authorizer


def get_endpoint(uf: str, service: str, ambiente: str, contingencia: bool = False) -> str:
    """Return the web service URL for *service* as seen by an emitter in *uf*."""
    if ambiente not in ENDPOINTS:
        raise ValueError(f"Ambiente inválido: {ambiente}")
    authorizer = get_authorizer(uf, contingencia)
    url = ENDPOINTS[ambiente][authorizer].get(service)
    if not url:
        raise ValueError(f"Serviço {service} não disponível para {authorizer}")
    return url


def get_uf_code(uf: str) -> str:
    """Return the two-digit IBGE code for a UF."""
    try:
        return UF_CODES[uf.upper()]
    except KeyError:
        raise ValueError(f"UF não encontrada: {uf}") from None
