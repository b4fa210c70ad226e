import json
import logging
import os
from enum import Enum
from typing import Dict, Optional

from .config import LEGACY_CREDENTIAL_KEYS, ROLE_KEY, TOKEN_KEY, USER_KEY

logger = logging.getLogger("ambulance_console")

CREDENTIAL_KEYS = (TOKEN_KEY, USER_KEY, ROLE_KEY) + tuple(LEGACY_CREDENTIAL_KEYS)


class Persistence(str, Enum):
    DURABLE = "durable"
    EPHEMERAL = "ephemeral"


# ============================================
# Key/value scopes
# ============================================
class MemoryStore:
    """Session-lifetime scope. Gone when the process exits."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class FileStore(MemoryStore):
    """Durable scope backed by a JSON file, rewritten on every change."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Discarding unreadable session store {self.path}: {e}")
            data = {}
        if not isinstance(data, dict):
            logger.warning(f"Discarding malformed session store {self.path}")
            data = {}
        self._data = {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump(self._data, fh)

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            super().remove(key)
            self._flush()


# ============================================
# Credential bookkeeping over both scopes
# ============================================
class CredentialStore:
    """
    Token, user and role live in exactly one scope, picked at write time.
    Reads check the durable scope first.
    """

    def __init__(self, durable: MemoryStore, ephemeral: MemoryStore):
        self.durable = durable
        self.ephemeral = ephemeral

    def scope(self, persistence: Persistence) -> MemoryStore:
        return self.durable if persistence == Persistence.DURABLE else self.ephemeral

    def _scopes(self):
        return (self.durable, self.ephemeral)

    def save(self, token: str, user: dict, persistence: Persistence) -> None:
        store = self.scope(persistence)
        store.set(TOKEN_KEY, token)
        store.set(USER_KEY, json.dumps(user))
        if user.get("role"):
            store.set(ROLE_KEY, user["role"])

    def token(self) -> Optional[str]:
        for store in self._scopes():
            token = store.get(TOKEN_KEY)
            if token:
                return token
        return None

    def stored_user(self) -> Optional[dict]:
        for store in self._scopes():
            raw = store.get(USER_KEY)
            if not raw:
                continue
            try:
                user = json.loads(raw)
            except ValueError:
                user = None
            if not isinstance(user, dict):
                logger.warning("Stored session user is corrupt, purging credentials")
                self.purge()
                return None
            return user
        return None

    def has_credentials(self) -> bool:
        return self.token() is not None

    def purge(self) -> None:
        """Remove every recognized credential key from both scopes."""
        for store in self._scopes():
            for key in CREDENTIAL_KEYS:
                store.remove(key)
