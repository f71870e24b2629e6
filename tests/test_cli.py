from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

from emissor_nfe.cli import (
    _check_keyring_available,
    _import_document,
    _init_config,
    _list_documents,
    _setup_certificate,
    _upsert_env_var,
    _warn_open_permissions,
    main,
)
from emissor_nfe.models.document import DocumentStatus, FiscalDocument
from emissor_nfe.services.error_classifier import classify
from emissor_nfe.services.fiscal_service import OperationResult
from emissor_nfe.utils import sequence
from tests.conftest import ACCESS_KEY, nfe_payload


class TestMain:
    @patch("emissor_nfe.cli._init_config")
    def test_init_dispatches(self, mock_init):
        main(["init"])
        mock_init.assert_called_once()

    @patch("emissor_nfe.cli._setup_certificate", return_value=False)
    def test_certificado_failure_exits_1(self, mock_setup):
        with pytest.raises(SystemExit, match="1"):
            main(["certificado", "acme"])
        mock_setup.assert_called_once_with("acme")

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            main([])

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_emitir_success(self, mock_cls, capsys):
        mock_cls.return_value.submit_invoice.return_value = OperationResult(
            True, data={"status": "authorized", "protocol": "135250000123456", "access_key": ACCESS_KEY}
        )
        main(["emitir", "doc-1"])
        mock_cls.return_value.submit_invoice.assert_called_once_with("doc-1")
        out = capsys.readouterr().out
        assert "OK" in out
        assert "135250000123456" in out

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_cce_rejected_exits_1(self, mock_cls, capsys):
        raw = "[778] Rejeicao: Informado NCM inexistente"
        mock_cls.return_value.add_correction_letter.return_value = OperationResult(
            False,
            data={"document_id": "doc-1", "warnings": []},
            classified_errors=classify(raw),
            error=raw,
            code="rejected",
        )
        with pytest.raises(SystemExit, match="1"):
            main(["cce", "doc-1", "Corrigir CEP do destinatário"])
        out = capsys.readouterr().out
        assert "ERRO" in out
        assert "missing_tax_classification" in out
        assert "/fiscal/products" in out

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_cancelar_passes_justification(self, mock_cls):
        mock_cls.return_value.cancel_invoice.return_value = OperationResult(True, data={"status": "canceled"})
        main(["cancelar", "doc-2", "Pedido cancelado pelo cliente"])
        mock_cls.return_value.cancel_invoice.assert_called_once_with("doc-2", "Pedido cancelado pelo cliente")

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_classificar(self, mock_cls, capsys):
        mock_cls.return_value.classify_failure.side_effect = lambda msg: OperationResult(
            True, classified_errors=classify(msg)
        )
        main(["classificar", "Produtos sem NCM: Camiseta Azul, Calça Jeans"])
        out = capsys.readouterr().out
        assert "itens: Camiseta Azul, Calça Jeans" in out

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_cartas(self, mock_cls, capsys):
        mock_cls.return_value.list_correction_letters.return_value = OperationResult(
            True,
            data={"letters": [{"sequence": 1, "status": "authorized", "protocol": "135250000900001", "text": "Corrigir CEP"}]},
        )
        main(["cartas", "doc-2"])
        assert "#1  authorized  135250000900001  Corrigir CEP" in capsys.readouterr().out

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_cartas_conferir_resends_pending(self, mock_cls, capsys):
        mock_cls.return_value.reconcile_correction_letters.return_value = OperationResult(
            True,
            data={"letters": [{"sequence": 1, "status": "authorized", "protocol": None, "text": "Corrigir CEP"}]},
        )
        main(["cartas", "doc-2", "--conferir"])
        mock_cls.return_value.reconcile_correction_letters.assert_called_once_with("doc-2")
        mock_cls.return_value.list_correction_letters.assert_not_called()
        assert "#1  authorized  -  Corrigir CEP" in capsys.readouterr().out

    @patch("emissor_nfe.services.fiscal_service.FiscalService")
    def test_cartas_conferir_still_unconfirmed(self, mock_cls, capsys):
        mock_cls.return_value.reconcile_correction_letters.return_value = OperationResult(
            False, error="CC-e 1 da NF-e doc-2 ainda sem confirmação da SEFAZ", code="unconfirmed_outcome"
        )
        with pytest.raises(SystemExit) as exc_info:
            main(["cartas", "doc-2", "--conferir"])
        assert exc_info.value.code == 1
        assert "ainda sem confirmação" in capsys.readouterr().out


class TestImportAndList:
    @pytest.fixture(autouse=True)
    def _data_dir(self, monkeypatch, tmp_path):
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: tmp_path / "seq")

    def test_import_derives_number_from_key(self, store, tenant, tmp_path, capsys):
        service = MagicMock(store=store)
        xml = tmp_path / "nfe.xml"
        xml.write_text(nfe_payload(ACCESS_KEY), encoding="utf-8")
        with patch("emissor_nfe.services.fiscal_service.load_tenant", return_value=tenant):
            assert _import_document(service, "acme", str(xml), None, None) == 0

        (doc,) = store.list_documents("acme")
        assert doc.number == 42
        assert doc.series == 1
        assert doc.status is DocumentStatus.DRAFT
        assert doc.environment == "homologacao"
        assert sequence.current_number("acme", 1, "homologacao") == 42
        assert "Rascunho criado" in capsys.readouterr().out

    def test_import_clash(self, store, tenant, draft, tmp_path, capsys):
        service = MagicMock(store=store)
        xml = tmp_path / "nfe.xml"
        xml.write_text(nfe_payload(ACCESS_KEY), encoding="utf-8")
        with patch("emissor_nfe.services.fiscal_service.load_tenant", return_value=tenant):
            assert _import_document(service, "acme", str(xml), None, None) == 1
        assert "já existe" in capsys.readouterr().out

    def test_import_without_key_needs_numbers(self, store, tenant, tmp_path, capsys):
        service = MagicMock(store=store)
        xml = tmp_path / "nfe.xml"
        xml.write_text("<NFe/>", encoding="utf-8")
        with patch("emissor_nfe.services.fiscal_service.load_tenant", return_value=tenant):
            assert _import_document(service, "acme", str(xml), None, None) == 1
            assert _import_document(service, "acme", str(xml), 7, 2) == 0
        assert store.list_documents()[0].number == 7

    def test_list(self, store, draft, authorized, capsys):
        _list_documents(MagicMock(store=store), None)
        out = capsys.readouterr().out
        assert draft.id in out
        assert authorized.access_key in out

    def test_list_empty(self, store, capsys):
        _list_documents(MagicMock(store=store), "nobody")
        assert "Nenhuma NF-e" in capsys.readouterr().out


class TestInitConfig:
    def test_copies_template(self, monkeypatch, tmp_path):
        config_dir = tmp_path / "config"
        data_dir = tmp_path / "data"
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: data_dir)
        _init_config()
        example = config_dir / "tenants" / "tenant.yaml.example"
        assert example.exists()
        assert "cert_path" in yaml.safe_load(example.read_text())
        assert data_dir.exists()

    def test_skips_existing(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        (config_dir / "tenants").mkdir(parents=True)
        (config_dir / "tenants" / "tenant.yaml.example").write_text("existing")
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: tmp_path / "data")
        _init_config()
        assert (config_dir / "tenants" / "tenant.yaml.example").read_text() == "existing"
        assert "já existe" in capsys.readouterr().out


class TestUpsertEnvVar:
    def test_creates_new_file(self, tmp_path):
        env_file = tmp_path / "sub" / ".env"
        _upsert_env_var(env_file, "KEY", "value")
        content = env_file.read_text()
        assert "KEY=" in content
        assert "value" in content

    def test_updates_existing_key(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("MY_KEY='old'\nOTHER='keep'\n")
        _upsert_env_var(env_file, "MY_KEY", "new")
        content = env_file.read_text()
        assert "new" in content
        assert "'old'" not in content
        assert "OTHER=" in content

    def test_handles_special_chars(self, tmp_path):
        from dotenv import dotenv_values

        env_file = tmp_path / ".env"
        env_file.touch()
        _upsert_env_var(env_file, "PW", "abc #def")
        assert dotenv_values(env_file)["PW"] == "abc #def"


class TestWarnOpenPermissions:
    def test_warns_group_readable(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o644)
        _warn_open_permissions(env_file)
        assert "permissões abertas" in capsys.readouterr().out

    def test_no_warn_restricted(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o600)
        _warn_open_permissions(env_file)
        assert capsys.readouterr().out == ""


class TestCheckKeyringAvailable:
    def test_available_with_real_backend(self):
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = MagicMock()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = type("FailKeyring", (), {})
        with patch.dict("sys.modules", {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module}):
            assert _check_keyring_available() is True

    def test_unavailable_with_fail_backend(self):
        fail_cls = type("Keyring", (), {})
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = fail_cls()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = fail_cls
        with patch.dict("sys.modules", {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module}):
            assert _check_keyring_available() is False


class TestSetupCertificate:
    @pytest.fixture
    def tenant_config(self, monkeypatch, tmp_path, test_pfx):
        pfx_path, _ = test_pfx
        config_dir = tmp_path / "config"
        (config_dir / "tenants").mkdir(parents=True)
        (config_dir / "tenants" / "acme.yaml").write_text(
            yaml.dump({"cnpj": "12345678000199", "razao_social": "ACME", "uf": "SP", "cert_path": pfx_path})
        )
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
        return config_dir

    def test_unknown_tenant(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: tmp_path)
        assert _setup_certificate("ghost") is False
        assert "cert_path" in capsys.readouterr().out

    def test_wrong_password(self, tenant_config, monkeypatch, capsys):
        monkeypatch.setattr("getpass.getpass", lambda _: "wrong-pass")
        assert _setup_certificate("acme") is False
        assert "ERRO" in capsys.readouterr().out

    def test_stores_in_keyring(self, tenant_config, monkeypatch, test_pfx, capsys):
        _, pfx_password = test_pfx
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_nfe.cli._check_keyring_available", lambda: True)
        with patch("emissor_nfe.config._set_keyring_password", return_value=True) as mock_set:
            assert _setup_certificate("acme") is True
        mock_set.assert_called_once_with("acme", pfx_password)
        out = capsys.readouterr().out
        assert "CNPJ: 12345678000199" in out
        assert not (tenant_config / ".env").exists()

    def test_falls_back_to_dotenv(self, tenant_config, monkeypatch, test_pfx):
        from dotenv import dotenv_values

        _, pfx_password = test_pfx
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_nfe.cli._check_keyring_available", lambda: False)
        with patch("emissor_nfe.config._delete_keyring_password", return_value=False):
            assert _setup_certificate("acme") is True
        assert dotenv_values(tenant_config / ".env")["CERT_PFX_PASSWORD"] == pfx_password


def test_print_result_document_fields(capsys):
    from emissor_nfe.cli import _print_result

    doc = FiscalDocument(id="doc-1", tenant_id="acme", number=42, series=1)
    code = _print_result(OperationResult(True, data={**doc.to_dict(), "warnings": ["confira o texto"]}))
    out = capsys.readouterr().out
    assert code == 0
    assert "number: 42" in out
    assert "AVISO: confira o texto" in out
