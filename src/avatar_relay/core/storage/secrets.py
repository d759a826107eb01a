from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

KEYRING_SERVICE_NAME = "avatar-relay"

# Secret key -> environment variable consulted when the store has no value.
SECRET_ENV_VARS: dict[str, str] = {
    "deepgram_api_key": "DEEPGRAM_API_KEY",
    "openai_api_key": "OPENAI_API_KEY",
    "google_api_key": "GOOGLE_API_KEY",
    "heygen_api_key": "HEYGEN_API_KEY",
}


class SecretStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


@dataclass(slots=True)
class InMemorySecretStore:
    _items: dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


@dataclass(slots=True)
class KeyringSecretStore:
    service_name: str = KEYRING_SERVICE_NAME

    def _keyring(self):
        try:
            import keyring  # type: ignore
        except ModuleNotFoundError as exc:
            raise ModuleNotFoundError(
                "keyring is required for KeyringSecretStore; install with `pip install keyring`"
            ) from exc
        return keyring

    def get(self, key: str) -> str | None:
        return self._keyring().get_password(self.service_name, key)

    def set(self, key: str, value: str) -> None:
        self._keyring().set_password(self.service_name, key, value)

    def delete(self, key: str) -> None:
        keyring = self._keyring()
        from keyring.errors import PasswordDeleteError  # type: ignore

        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            return


@dataclass(slots=True)
class EncryptedFileSecretStore:
    """Fernet-encrypted JSON file; the key is derived from a passphrase with scrypt."""

    path: Path
    passphrase: str = field(repr=False)
    _fernet: Fernet = field(init=False, repr=False)
    _items: dict[str, str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.passphrase:
            raise ValueError("passphrase must be non-empty")
        self.path = Path(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            salt = base64.b64decode(raw["salt"])
            items = raw.get("items", {})
        else:
            salt = os.urandom(16)
            items = {}
            _atomic_write_json(
                self.path,
                {"version": 1, "salt": base64.b64encode(salt).decode("ascii"), "items": items},
            )

        self._fernet = Fernet(_derive_key(passphrase=self.passphrase, salt=salt))
        self._items = dict(items)

    def get(self, key: str) -> str | None:
        token = self._items.get(key)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("invalid passphrase or corrupted secrets file") from exc

    def set(self, key: str, value: str) -> None:
        self._items[key] = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        self._save()

    def delete(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._save()

    def _save(self) -> None:
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        raw["items"] = self._items
        _atomic_write_json(self.path, raw)


def mask_secret(value: str, *, unmasked_prefix: int = 3) -> str:
    if not value:
        return value
    if len(value) <= unmasked_prefix:
        return "*" * len(value)
    return value[:unmasked_prefix] + "****"


def _derive_key(*, passphrase: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def _atomic_write_json(path: Path, data: object) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)
