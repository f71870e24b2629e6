from __future__ import annotations

import argparse
import getpass
import logging
import stat
import sys
import uuid
from importlib.resources import files
from pathlib import Path


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissões abertas.")
            print("  Recomendação: chmod 600", env_file)
    except OSError:
        pass


# --- init / certificado ---


def _init_config() -> None:
    """Copy the bundled tenant template to the user's config directory."""
    from emissor_nfe.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    tenants_dir = config_dir / "tenants"
    tenants_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    dest = tenants_dir / "tenant.yaml.example"
    if dest.exists():
        print(f"  já existe: {dest}")
    else:
        with (templates / "tenant.yaml.example").open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  criado: {dest}")

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")
    print()
    print("Próximos passos:")
    print(f"  1. cp {dest} {tenants_dir / '<tenant>.yaml'}")
    print("  2. Edite o arquivo com CNPJ, UF, série e caminho do certificado")
    print("  3. Execute: emissor-nfe certificado <tenant>")


def _setup_certificate(tenant_id: str) -> bool:
    """Validate the tenant's certificate and store its password. Returns True on success."""
    from emissor_nfe.config import (
        _delete_keyring_password,
        _set_keyring_password,
        get_config_dir,
        load_tenant,
    )
    from emissor_nfe.services.exceptions import CredentialError
    from emissor_nfe.utils.certificate import certificate_info

    try:
        cert_path = Path(load_tenant(tenant_id)["cert_path"]).expanduser()
    except (FileNotFoundError, KeyError):
        print(f"Erro: tenant {tenant_id} sem cert_path configurado")
        return False
    if not cert_path.is_file():
        print(f"Erro: arquivo não encontrado: {cert_path}")
        return False

    pfx_password = getpass.getpass("Senha do certificado: ")

    print()
    print("Validando certificado…")
    try:
        info = certificate_info(cert_path.read_bytes(), pfx_password)
    except CredentialError as e:
        print(f"  ERRO: {e}")
        return False

    print(f"  Sujeito: {info['subject']}")
    print(f"  CNPJ: {info['cnpj'] or '(não encontrado)'}")
    print(f"  Válido até: {info['not_after']:%d/%m/%Y} ({info['days_until_expiry']} dias)")
    if not info["valid"]:
        print("  AVISO: Certificado expirado")

    print()
    if _check_keyring_available() and _set_keyring_password(tenant_id, pfx_password):
        print("  Senha armazenada no keychain do sistema.")
        return True

    env_file = get_config_dir() / ".env"
    _delete_keyring_password(tenant_id)
    _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
    print(f"  Keychain indisponível; senha salva em {env_file}")
    _warn_open_permissions(env_file)
    return True


# --- output ---


def _print_result(result) -> int:
    data = result.data or {}
    if result.success:
        print("OK")
    else:
        print(f"ERRO: {result.error}")
    for key in ("message", "status", "number", "series", "access_key", "protocol", "authorized_at",
                "receipt_number", "cancel_protocol", "cancel_requested_at", "sequence", "danfe_url", "xml_url", "id"):
        if data.get(key) not in (None, ""):
            print(f"  {key}: {data[key]}")
    for warning in data.get("warnings", []):
        print(f"  AVISO: {warning}")
    for err in result.classified_errors:
        print(f"  [{err.kind}] {err.message}")
        if err.related_entities:
            print(f"      itens: {', '.join(err.related_entities)}")
        print(f"      → {err.remediation.action} ({err.remediation.route})")
    return 0 if result.success else 1


def _import_document(service, tenant_id: str, xml_path: str, numero: int | None, serie: int | None) -> int:
    """Register a signed <NFe> file as a draft."""
    from emissor_nfe.models.document import DocumentStatus, FiscalDocument
    from emissor_nfe.services.fiscal_service import load_tenant
    from emissor_nfe.services.messages import access_key_from_payload
    from emissor_nfe.utils import sequence

    tenant = load_tenant(tenant_id)
    try:
        payload = Path(xml_path).read_text(encoding="utf-8")
    except OSError as e:
        print(f"Erro: não foi possível ler {xml_path}: {e}")
        return 1
    key = access_key_from_payload(payload)
    if key:
        serie = serie if serie is not None else int(key[22:25])
        numero = numero if numero is not None else int(key[25:34])
    if numero is None or serie is None:
        print("Erro: informe --numero e --serie (chave de acesso não encontrada no XML)")
        return 1
    doc = FiscalDocument(
        id=uuid.uuid4().hex,
        tenant_id=tenant.id,
        number=numero,
        series=serie,
        status=DocumentStatus.DRAFT,
        payload_xml=payload,
        environment=tenant.ambiente,
    )
    try:
        service.store.save(doc)
    except ValueError as e:
        print(f"Erro: {e}")
        return 1
    # keep duplicated drafts from reusing an imported number
    sequence.advance_to(numero, tenant.id, serie, tenant.ambiente)
    print(f"Rascunho criado: {doc.id} (NF-e {numero}, série {serie})")
    return 0


def _list_documents(service, tenant_id: str | None) -> int:
    docs = service.store.list_documents(tenant_id)
    if not docs:
        print("Nenhuma NF-e registrada.")
        return 0
    for doc in sorted(docs, key=lambda d: (d.tenant_id, d.series, d.number)):
        print(f"{doc.id}  {doc.tenant_id}  {doc.series:>3}/{doc.number:<9}  {doc.status:<10}  {doc.access_key or ''}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="emissor-nfe", description="Emissor de NF-e (modelo 55)")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="cria os arquivos de configuração de exemplo")
    p = sub.add_parser("certificado", help="valida o certificado do tenant e guarda a senha")
    p.add_argument("tenant")
    p = sub.add_parser("status", help="consulta o status do serviço SEFAZ")
    p.add_argument("tenant")
    p = sub.add_parser("importar", help="registra um XML <NFe> assinado como rascunho")
    p.add_argument("tenant")
    p.add_argument("xml")
    p.add_argument("--numero", type=int)
    p.add_argument("--serie", type=int)
    p = sub.add_parser("listar", help="lista as NF-e registradas")
    p.add_argument("tenant", nargs="?")
    for name, help_text in (
        ("emitir", "envia um rascunho para autorização"),
        ("consultar", "consulta o resultado de uma NF-e pendente"),
        ("duplicar", "cria um novo rascunho a partir de uma NF-e rejeitada"),
        ("reabrir", "volta para rascunho uma NF-e que a SEFAZ não localizou"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("documento")
    p = sub.add_parser("cartas", help="lista as cartas de correção de uma NF-e")
    p.add_argument("documento")
    p.add_argument("--conferir", action="store_true", help="reenvia as cartas pendentes antes de listar")
    p = sub.add_parser("cancelar", help="cancela uma NF-e autorizada")
    p.add_argument("documento")
    p.add_argument("justificativa")
    p = sub.add_parser("cce", help="emite uma carta de correção")
    p.add_argument("documento")
    p.add_argument("texto")
    p = sub.add_parser("classificar", help="classifica uma mensagem de erro da SEFAZ/gateway")
    p.add_argument("mensagem")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the emissor-nfe CLI."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose > 1 else logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init":
        _init_config()
        return
    if args.command == "certificado":
        if not _setup_certificate(args.tenant):
            sys.exit(1)
        return

    from emissor_nfe.services.exceptions import BusinessRuleError
    from emissor_nfe.services.fiscal_service import FiscalService

    service = FiscalService()
    commands = {
        "status": lambda: _print_result(service.service_status(args.tenant)),
        "emitir": lambda: _print_result(service.submit_invoice(args.documento)),
        "consultar": lambda: _print_result(service.poll_invoice_status(args.documento)),
        "duplicar": lambda: _print_result(service.duplicate_invoice(args.documento)),
        "reabrir": lambda: _print_result(service.reopen_invoice(args.documento)),
        "cancelar": lambda: _print_result(service.cancel_invoice(args.documento, args.justificativa)),
        "cce": lambda: _print_result(service.add_correction_letter(args.documento, args.texto)),
        "classificar": lambda: _print_result(service.classify_failure(args.mensagem)),
        "cartas": lambda: _print_letters(service, args.documento, args.conferir),
        "listar": lambda: _list_documents(service, args.tenant),
        "importar": lambda: _import_document(service, args.tenant, args.xml, args.numero, args.serie),
    }
    try:
        code = commands[args.command]()
    except BusinessRuleError as e:
        print(f"Erro: {e}")
        code = 1
    if code:
        sys.exit(code)


def _print_letters(service, document_id: str, reconcile: bool = False) -> int:
    if reconcile:
        result = service.reconcile_correction_letters(document_id)
        if not result.success:
            print(f"Erro: {result.error}")
            return 1
    else:
        result = service.list_correction_letters(document_id)
    letters = result.data["letters"] if result.data else []
    if not letters:
        print("Nenhuma carta de correção.")
    for letter in letters:
        print(f"  #{letter['sequence']}  {letter['status']}  {letter['protocol'] or '-'}  {letter['text']}")
    return 0


if __name__ == "__main__":
    main()
