# src/dashboard_client/config.py
"""
Centralized client configuration.

All values can be overridden via environment variables:
    DASHBOARD_API_BASE_URL - API root (default: http://localhost:5000/api/v1)
    DASHBOARD_API_TIMEOUT - Request timeout in milliseconds (default: 30000)
    DASHBOARD_STORAGE_PREFIX - Prefix for persisted credential keys (default: cm_)
    DASHBOARD_AUTH_TOKEN_KEY - Access token key name (default: auth_token)
    DASHBOARD_REFRESH_TOKEN_KEY - Refresh token key name (default: refresh_token)
    DASHBOARD_REFRESH_PATH - Token renewal endpoint (default: /auth/refresh)
    DASHBOARD_DATA_DIR - Root for credentials.json and logs/ (default: CWD)
    DASHBOARD_RETRY_ATTEMPTS - Max retries for retry-safe calls (default: 3)
    DASHBOARD_RETRY_DELAY - Initial backoff in seconds (default: 1.0)
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import httpx

from .utils.paths import get_data_file, get_default_root

lib_logger = logging.getLogger("dashboard_client")

DEFAULT_BASE_URL = "http://localhost:5000/api/v1"
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_STORAGE_PREFIX = "cm_"
DEFAULT_REFRESH_PATH = "/auth/refresh"
CREDENTIALS_FILENAME = "credentials.json"


def _get_env_float(env: Mapping[str, str], key: str, default: float) -> float:
    """Get a float value from the environment, or return default."""
    value = env.get(key)
    if value is not None:
        try:
            return float(value)
        except ValueError:
            lib_logger.warning(
                f"Invalid value for {key}: {value}. Using default: {default}"
            )
    return default


def _get_env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            lib_logger.warning(
                f"Invalid value for {key}: {value}. Using default: {default}"
            )
    return default


@dataclass
class ClientConfig:
    """
    Settings shared by the request pipeline, the credential store and the
    failure log.
    """

    base_url: str = DEFAULT_BASE_URL
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    storage_prefix: str = DEFAULT_STORAGE_PREFIX
    auth_token_key: str = "auth_token"
    refresh_token_key: str = "refresh_token"
    refresh_path: str = DEFAULT_REFRESH_PATH
    data_dir: Path = field(default_factory=get_default_root)
    retry_attempts: int = 3
    retry_delay: float = 1.0

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """
        Build a configuration from environment variables.

        Args:
            env: Mapping to read from (typically os.environ, the default).
        """
        env = os.environ if env is None else env
        data_dir = env.get("DASHBOARD_DATA_DIR")
        return cls(
            base_url=env.get("DASHBOARD_API_BASE_URL") or DEFAULT_BASE_URL,
            timeout_ms=_get_env_float(env, "DASHBOARD_API_TIMEOUT", DEFAULT_TIMEOUT_MS),
            storage_prefix=env.get("DASHBOARD_STORAGE_PREFIX", DEFAULT_STORAGE_PREFIX),
            auth_token_key=env.get("DASHBOARD_AUTH_TOKEN_KEY") or "auth_token",
            refresh_token_key=env.get("DASHBOARD_REFRESH_TOKEN_KEY") or "refresh_token",
            refresh_path=env.get("DASHBOARD_REFRESH_PATH") or DEFAULT_REFRESH_PATH,
            data_dir=Path(data_dir).expanduser() if data_dir else get_default_root(),
            retry_attempts=max(0, _get_env_int(env, "DASHBOARD_RETRY_ATTEMPTS", 3)),
            retry_delay=max(0.0, _get_env_float(env, "DASHBOARD_RETRY_DELAY", 1.0)),
        )

    @property
    def access_key(self) -> str:
        """Persisted key holding the access token."""
        return f"{self.storage_prefix}{self.auth_token_key}"

    @property
    def refresh_key(self) -> str:
        """Persisted key holding the refresh token."""
        return f"{self.storage_prefix}{self.refresh_token_key}"

    @property
    def credentials_path(self) -> Path:
        return get_data_file(CREDENTIALS_FILENAME, self.data_dir)

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    def timeout(self) -> httpx.Timeout:
        """
        A single overall budget applied to connect, read, write and pool
        acquisition, mirroring the dashboard's one-number request timeout.
        """
        return httpx.Timeout(self.timeout_ms / 1000.0)
