from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Protocol

import structlog
from cryptography.fernet import Fernet, InvalidToken

log = structlog.get_logger()


class SecretStore(Protocol):
    """Credential storage keyed by provider id."""

    def get(self, provider_id: str) -> str | None: ...

    def set(self, provider_id: str, credential: str) -> None: ...

    def delete(self, provider_id: str) -> None: ...


class InMemorySecretStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self._secrets: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, provider_id: str) -> str | None:
        with self._lock:
            return self._secrets.get(provider_id)

    def set(self, provider_id: str, credential: str) -> None:
        with self._lock:
            self._secrets[provider_id] = credential

    def delete(self, provider_id: str) -> None:
        with self._lock:
            self._secrets.pop(provider_id, None)


class EncryptedSecretStore:
    """
    Encrypted-at-rest credential store.

    Keeps ONE blob at `path`: Fernet-encrypted JSON mapping provider id -> credential.
    Every mutation rewrites the whole blob.
    """

    def __init__(self, path: str | Path, fernet_key: str):
        self.path = Path(path)
        try:
            self._fernet = Fernet(fernet_key.encode("utf-8"))
        except (ValueError, TypeError) as e:
            raise ValueError("CREDENTIALS_FERNET_KEY is not a valid Fernet key.") from e
        self._lock = threading.Lock()

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def exists(self) -> bool:
        return self.path.exists()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self._fernet.decrypt(self.path.read_bytes())
        except InvalidToken as e:
            raise ValueError("Failed to decrypt credentials (wrong key or corrupted file).") from e
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict) or not all(isinstance(v, str) for v in payload.values()):
            raise ValueError("Credential payload must be a JSON object of strings.")
        return payload

    def _save(self, secrets: dict[str, str]) -> None:
        self.path.write_bytes(self._fernet.encrypt(json.dumps(secrets).encode("utf-8")))

    def get(self, provider_id: str) -> str | None:
        with self._lock:
            return self._load().get(provider_id)

    def set(self, provider_id: str, credential: str) -> None:
        with self._lock:
            secrets = self._load()
            secrets[provider_id] = credential
            self._save(secrets)
        log.info("credential_stored", provider=provider_id)

    def delete(self, provider_id: str) -> None:
        with self._lock:
            secrets = self._load()
            if secrets.pop(provider_id, None) is None:
                return
            self._save(secrets)
        log.info("credential_deleted", provider=provider_id)
