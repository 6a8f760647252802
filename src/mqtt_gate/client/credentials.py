"""
Credential persistence.

The client only needs three slots (username, password, remember flag) in some
durable key/value store. `CredentialStore` is that contract; the helpers below
are the only code that knows the slot names and the text encoding of the flag.
At-rest protection is the store's responsibility.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)

USERNAME_KEY = "gate_username"
PASSWORD_KEY = "gate_password"
REMEMBER_KEY = "gate_remember"


@dataclass(frozen=True)
class StoredCredentials:
    username: str = ""
    password: str = ""
    remember: bool = False

    @property
    def complete(self) -> bool:
        return bool(self.username and self.password)


class CredentialStore:
    """Minimal key/value persistence. No transactional guarantees are assumed."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key):
        return self._values.get(key)

    def set(self, key, value):
        self._values[key] = value

    def remove(self, key):
        self._values.pop(key, None)


class YamlCredentialStore(CredentialStore):
    """Keeps the slots in a small YAML file, rewritten on every change."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed credential file {self.path}")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False)

    def get(self, key):
        return self._read().get(key)

    def set(self, key, value):
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


def load_credentials(store: CredentialStore) -> StoredCredentials:
    return StoredCredentials(
        username=store.get(USERNAME_KEY) or "",
        password=store.get(PASSWORD_KEY) or "",
        remember=(store.get(REMEMBER_KEY) or "").strip().lower() == "true",
    )


def save_credentials(store: CredentialStore, username: str, password: str, remember: bool = True) -> None:
    store.set(USERNAME_KEY, username)
    store.set(PASSWORD_KEY, password)
    store.set(REMEMBER_KEY, "true" if remember else "false")
    logger.debug(f"Stored credentials for {username!r}")


def clear_credentials(store: CredentialStore) -> None:
    store.remove(USERNAME_KEY)
    store.remove(PASSWORD_KEY)
    store.set(REMEMBER_KEY, "false")
    logger.debug("Cleared stored credentials")
