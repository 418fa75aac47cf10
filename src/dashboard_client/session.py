# src/dashboard_client/session.py

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .client import ApiClient
from .data_store import DataStore
from .error_handler import ApiError, UnauthenticatedError, UnexpectedResponseError, mask_token

lib_logger = logging.getLogger("dashboard_client")


@dataclass
class SessionState:
    user: Optional[Dict[str, Any]] = None
    subscription: Optional[Dict[str, Any]] = None
    permissions: List[Any] = field(default_factory=list)
    is_authenticated: bool = False
    is_initialized: bool = False


class AuthSession:
    """
    Login, logout and session bootstrap on top of an ApiClient.

    Besides the renewal coordinator, this is the only writer of the
    credential store: a login stores the issued pair, a logout (or a failed
    bootstrap) clears it along with every cached domain.
    """

    def __init__(self, client: ApiClient, data_store: Optional[DataStore] = None):
        self.client = client
        self.data_store = data_store
        self.state = SessionState()

    @property
    def is_authenticated(self) -> bool:
        return self.state.is_authenticated

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self.state.user

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """Password login. Returns the login payload (user, subscription, ...)."""
        return await self._complete_login(
            "/auth/login", {"email": email, "password": password}
        )

    async def login_with_otp(self, phone: str, otp: str) -> Dict[str, Any]:
        return await self._complete_login("/auth/login-otp", {"phone": phone, "otp": otp})

    async def _complete_login(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.client.post(path, json=payload, allow_renewal=False)
        tokens = data.get("tokens") if isinstance(data, dict) else None
        if not isinstance(tokens, dict) or not tokens.get("accessToken"):
            raise UnexpectedResponseError("Login response did not include tokens", payload=data)

        self.client.coordinator.reset()
        self.client.credentials.set_tokens(tokens["accessToken"], tokens.get("refreshToken"))
        self.state = SessionState(
            user=data.get("user"),
            subscription=data.get("subscription"),
            permissions=data.get("permissions") or [],
            is_authenticated=True,
            is_initialized=True,
        )
        if self.data_store is not None:
            self.data_store.reset()
        lib_logger.info(
            f"Logged in via {path} (token {mask_token(tokens['accessToken'])})"
        )
        return data

    async def initialize(self) -> bool:
        """
        Restore a session from stored credentials by loading the profile.

        Returns:
            True if the stored credentials are still accepted

        Raises:
            ApiError: the profile could not be loaded for a reason other than
                rejected credentials; stored credentials are kept
        """
        if not self.client.credentials.has_credentials():
            self.state = SessionState(is_initialized=True)
            return False

        try:
            await self.refresh_profile()
        except UnauthenticatedError:
            lib_logger.info("Stored credentials were rejected, clearing session")
            self._clear_local()
            return False
        finally:
            self.state.is_initialized = True
        return True

    async def refresh_profile(self) -> Dict[str, Any]:
        profile = await self.client.get("/auth/profile", retry_safe=True)
        if isinstance(profile, dict) and "user" in profile:
            self.state.user = profile.get("user")
            self.state.subscription = profile.get("subscription", self.state.subscription)
            self.state.permissions = profile.get("permissions") or self.state.permissions
        else:
            self.state.user = profile
        self.state.is_authenticated = True
        return profile

    async def logout(self) -> None:
        """
        End the session. The server call is best effort; local credentials and
        cached data are always cleared.
        """
        try:
            if self.client.credentials.get_access():
                await self.client.post("/auth/logout", allow_renewal=False)
        except ApiError as e:
            lib_logger.warning(f"Server-side logout failed, clearing locally: {e}")
        finally:
            self._clear_local()
        lib_logger.info("Logged out")

    def on_session_expired(self, error: Exception) -> None:
        """Hook for RenewalCoordinator: the session ended after a failed renewal."""
        lib_logger.info(f"Session expired: {error}")
        self.state = SessionState(is_initialized=True)
        if self.data_store is not None:
            self.data_store.reset()

    def _clear_local(self) -> None:
        self.client.coordinator.reset()
        self.client.credentials.clear()
        self.state = SessionState(is_initialized=True)
        if self.data_store is not None:
            self.data_store.reset()
