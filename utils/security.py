#Description: Fernet-encrypted vault for advisory and Telegram credentials.

import json
from pathlib import Path
from threading import Lock

from cryptography.fernet import Fernet

from utils.config import settings
from utils.logging import logger

class SecretsVault:
    """
    Encrypted credential store under `base_dir`. Entries are keyed by label:
    "advisory" holds the API key, "telegram" holds the bot token and chat id.
    Filled from the command line (`--save-advisory-key`, `--save-telegram`).
    """
    _instance = None
    _lock = Lock()

    def __init__(self, base_dir: Path | None = None, key: str | bytes | None = None):
        base = base_dir or Path(".")
        key = key or settings.ENCRYPTION_KEY
        key_path = base / ".key"
        if not key:
            if key_path.exists():
                key_txt = key_path.read_text().strip()
                # Fernet keys are 32 bytes urlsafe-base64 encoded
                if len(key_txt) != 44:
                    raise ValueError(f"Key in {key_path} is invalid length for Fernet (should be 44 base64 chars)")
                key = key_txt.encode()
            else:
                key = Fernet.generate_key()
                key_path.write_text(key.decode())
        else:
            key = key.encode() if isinstance(key, str) else key
        self.fernet = Fernet(key)
        self.path = base / ".secrets.json"
        if not self.path.exists():
            self.path.write_text(self.fernet.encrypt(b"{}").decode())

    @classmethod
    def instance(cls):
        with cls._lock:
            if not cls._instance:
                cls._instance = SecretsVault()
        return cls._instance

    def _read(self) -> dict:
        data = self.path.read_text().encode()
        raw = self.fernet.decrypt(data)
        return json.loads(raw.decode())

    def _write(self, obj: dict):
        enc = self.fernet.encrypt(json.dumps(obj).encode())
        self.path.write_text(enc.decode())

    def store(self, label: str, key_id: str, secret: str):
        data = self._read()
        data[label] = {"key": key_id, "secret": secret}
        self._write(data)

    def fetch(self, label: str) -> tuple[str | None, str | None]:
        data = self._read()
        info = data.get(label)
        if not info: return None, None
        return info.get("key"), info.get("secret")


def resolve_credential(setting_value: str | None, label: str, field: str = "key") -> str | None:
    """Return the configured value, falling back to the vault entry for `label`."""
    if setting_value:
        return setting_value
    try:
        key_id, secret = SecretsVault.instance().fetch(label)
    except Exception as e:
        logger.warning(f"Secrets vault lookup failed for {label}: {e}")
        return None
    return key_id if field == "key" else secret
