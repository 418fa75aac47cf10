# src/dashboard_client/credential_store.py

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

from .config import ClientConfig
from .error_handler import mask_token
from .utils.resilient_io import safe_read_json, safe_write_json

lib_logger = logging.getLogger("dashboard_client")


class CredentialStore(ABC):
    """
    Durable storage for the access/refresh token pair.

    Tokens are opaque strings; the store never inspects them. Each pair member
    lives under its own key, "<prefix>auth_token" and "<prefix>refresh_token".
    """

    def __init__(self, access_key: str, refresh_key: str):
        self.access_key = access_key
        self.refresh_key = refresh_key

    @abstractmethod
    def _read(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def _write(self, values: Dict[str, Optional[str]]) -> None:
        """Persist the given keys; a None value removes the key."""

    def get_access(self) -> Optional[str]:
        return self._read(self.access_key)

    def get_refresh(self) -> Optional[str]:
        return self._read(self.refresh_key)

    def has_credentials(self) -> bool:
        return self.get_access() is not None or self.get_refresh() is not None

    def set_tokens(
        self, access: Optional[str] = None, refresh: Optional[str] = None
    ) -> None:
        """
        Store either or both tokens. An omitted (or empty) argument leaves the
        stored value unchanged.
        """
        updates: Dict[str, Optional[str]] = {}
        if access:
            updates[self.access_key] = access
        if refresh:
            updates[self.refresh_key] = refresh
        if not updates:
            return
        self._write(updates)
        lib_logger.debug(
            f"Stored tokens: access={mask_token(access) if access else 'unchanged'}, "
            f"refresh={mask_token(refresh) if refresh else 'unchanged'}"
        )

    def clear(self) -> None:
        """Remove both tokens."""
        self._write({self.access_key: None, self.refresh_key: None})
        lib_logger.debug("Cleared stored tokens")


class MemoryCredentialStore(CredentialStore):
    """Process-local store, for tests and embedding in short-lived scripts."""

    def __init__(
        self,
        access_key: str = "cm_auth_token",
        refresh_key: str = "cm_refresh_token",
        access: Optional[str] = None,
        refresh: Optional[str] = None,
    ):
        super().__init__(access_key, refresh_key)
        self._values: Dict[str, str] = {}
        if access:
            self._values[access_key] = access
        if refresh:
            self._values[refresh_key] = refresh

    def _read(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def _write(self, values: Dict[str, Optional[str]]) -> None:
        for key, value in values.items():
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = value


class FileCredentialStore(CredentialStore):
    """
    JSON-file backed store that survives restarts.

    Every read goes to disk so several client instances sharing the file see
    each other's renewals. Writes are atomic (tempfile + move) with 0o600
    permissions. Keys belonging to other prefixes are preserved.
    """

    def __init__(
        self,
        path: Union[str, Path],
        access_key: str = "cm_auth_token",
        refresh_key: str = "cm_refresh_token",
    ):
        super().__init__(access_key, refresh_key)
        self.path = Path(path)

    @classmethod
    def from_config(cls, config: ClientConfig) -> "FileCredentialStore":
        return cls(
            config.credentials_path,
            access_key=config.access_key,
            refresh_key=config.refresh_key,
        )

    def _load(self) -> Dict[str, str]:
        data = safe_read_json(self.path, lib_logger)
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _read(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def _write(self, values: Dict[str, Optional[str]]) -> None:
        data = self._load()
        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value

        if not safe_write_json(self.path, data, lib_logger, secure_permissions=True):
            raise IOError(f"Failed to persist credentials to '{self.path}'")
