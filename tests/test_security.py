#Description: Encrypted credential vault, settings fallback and the CLI that fills it.

from cryptography.fernet import Fernet

from utils import security
from utils.security import SecretsVault, resolve_credential
from trader_app import parse_args, save_credentials


def test_vault_round_trip(tmp_path):
    vault = SecretsVault(base_dir=tmp_path, key=Fernet.generate_key())
    assert vault.fetch("telegram") == (None, None)
    vault.store("telegram", "bot-token", "chat-id")
    assert vault.fetch("telegram") == ("bot-token", "chat-id")
    assert b"bot-token" not in (tmp_path / ".secrets.json").read_bytes()


def test_vault_generates_key_file(tmp_path, monkeypatch):
    monkeypatch.setattr(security.settings, "ENCRYPTION_KEY", None)
    SecretsVault(base_dir=tmp_path).store("advisory", "k", "")
    assert len((tmp_path / ".key").read_text().strip()) == 44
    assert SecretsVault(base_dir=tmp_path).fetch("advisory") == ("k", "")


def test_resolve_credential_prefers_setting(tmp_path, monkeypatch):
    vault = SecretsVault(base_dir=tmp_path, key=Fernet.generate_key())
    vault.store("telegram", "vault-token", "vault-chat")
    monkeypatch.setattr(SecretsVault, "_instance", vault)
    assert resolve_credential("env-token", "telegram") == "env-token"
    assert resolve_credential(None, "telegram") == "vault-token"
    assert resolve_credential("", "telegram", field="secret") == "vault-chat"
    assert resolve_credential(None, "advisory") is None


def test_cli_saves_credentials_to_vault(tmp_path):
    vault = SecretsVault(base_dir=tmp_path, key=Fernet.generate_key())
    assert save_credentials(parse_args([]), vault) is False
    args = parse_args(["--save-advisory-key", "sk-1", "--save-telegram", "bot:tok", "100"])
    assert save_credentials(args, vault) is True
    assert vault.fetch("advisory") == ("sk-1", "")
    assert vault.fetch("telegram") == ("bot:tok", "100")
