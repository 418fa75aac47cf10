# src/dashboard_client/renewal_coordinator.py

"""
Token Renewal Coordinator

Ensures only ONE token renewal call is in flight at a time, no matter how
many requests fail with 401 concurrently.

The first request that observes a 401 while the coordinator is idle starts
the renewal; every request that observes a 401 while it is running is queued
as a waiter. When the renewal settles, all waiters are resolved with the new
access token (and replay their request) or rejected together, in which case
the stored credentials are cleared and the session-expired hook fires.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .credential_store import CredentialStore
from .error_handler import UnauthenticatedError, mask_token

lib_logger = logging.getLogger("dashboard_client")

SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."

# Performs the renewal call and returns (access_token, refresh_token or None)
RefreshFunc = Callable[[], Awaitable[Tuple[str, Optional[str]]]]


class RenewalState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class RenewalCoordinator:
    """
    Owns the renewal state and the pending-waiter queue.

    Nothing else reads or mutates either; the request pipeline only calls
    renew(). One instance is shared by every ApiClient that talks to the same
    credential store.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        on_session_expired: Optional[Callable[[Exception], Any]] = None,
    ):
        self._store = credential_store
        self._on_session_expired = on_session_expired

        self._state = RenewalState.IDLE
        self._waiters: List[asyncio.Future] = []
        self._task: Optional[asyncio.Task] = None
        self._renewal_start_time: Optional[float] = None

        # Statistics
        self._total_renewals: int = 0
        self._successful_renewals: int = 0
        self._failed_renewals: int = 0

    @property
    def state(self) -> RenewalState:
        return self._state

    def is_renewal_in_progress(self) -> bool:
        return self._state is RenewalState.REFRESHING

    def get_pending_count(self) -> int:
        """Number of callers currently waiting on the renewal outcome."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def renew(self, refresh_func: RefreshFunc) -> str:
        """
        Wait for a fresh access token, starting a renewal if none is running.

        The renewal itself runs in its own task, so cancelling the caller
        (even the one that started it) only abandons that caller's wait.

        Args:
            refresh_func: Coroutine factory performing the renewal call

        Returns:
            The new access token

        Raises:
            UnauthenticatedError: if the renewal failed; credentials are cleared
        """
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.append(waiter)

        if self._state is RenewalState.IDLE:
            self._begin(refresh_func)
        else:
            lib_logger.info(
                f"[RenewalCoordinator] Token renewal already in progress; "
                f"request queued (position {len(self._waiters)})"
            )

        return await waiter

    def _begin(self, refresh_func: RefreshFunc) -> None:
        self._state = RenewalState.REFRESHING
        self._renewal_start_time = time.time()
        self._total_renewals += 1
        lib_logger.info("[RenewalCoordinator] Access token rejected, starting renewal")
        self._task = asyncio.ensure_future(self._run(refresh_func))

    async def _run(self, refresh_func: RefreshFunc) -> None:
        try:
            access_token, refresh_token = await refresh_func()
            if not access_token:
                raise UnauthenticatedError("Renewal response did not include an access token")
        except asyncio.CancelledError:
            # reset() detaches the task before cancelling it
            if self._task is asyncio.current_task():
                self._fail(UnauthenticatedError("Token renewal was aborted"))
            raise
        except Exception as e:
            self._fail(e)
        else:
            self._succeed(access_token, refresh_token)

    def _drain(self) -> List[asyncio.Future]:
        waiters = self._waiters
        self._waiters = []
        self._task = None
        self._state = RenewalState.IDLE
        return waiters

    def _succeed(self, access_token: str, refresh_token: Optional[str]) -> None:
        duration = time.time() - (self._renewal_start_time or time.time())
        try:
            self._store.set_tokens(access_token, refresh_token)
        except OSError as e:
            self._fail(e)
            return

        self._successful_renewals += 1
        waiters = self._drain()
        lib_logger.info(
            f"[RenewalCoordinator] Renewal SUCCESS in {duration:.2f}s "
            f"(token {mask_token(access_token)}), replaying {len(waiters)} request(s)"
        )
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(access_token)

    def _fail(self, error: Exception) -> None:
        self._failed_renewals += 1
        if self._store.has_credentials():
            self._store.clear()

        waiters = self._drain()
        lib_logger.error(
            f"[RenewalCoordinator] Renewal FAILED ({type(error).__name__}: {error}); "
            f"credentials cleared, rejecting {len(waiters)} request(s)"
        )
        for waiter in waiters:
            if not waiter.done():
                rejection = UnauthenticatedError(SESSION_EXPIRED_MESSAGE)
                rejection.__cause__ = error
                waiter.set_exception(rejection)

        if self._on_session_expired is not None:
            try:
                self._on_session_expired(error)
            except Exception as hook_error:
                lib_logger.error(
                    f"[RenewalCoordinator] on_session_expired hook raised: {hook_error}"
                )

    def reset(self) -> None:
        """
        Return to IDLE, cancelling any running renewal and rejecting its
        waiters. Credentials are left untouched.
        """
        task = self._task
        waiters = self._drain()
        if task is not None and not task.done():
            task.cancel()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(UnauthenticatedError("Token renewal was reset"))

    def get_status(self) -> Dict[str, Any]:
        """Get current coordinator status for debugging/monitoring."""
        return {
            "state": self._state.value,
            "renewal_duration": (time.time() - self._renewal_start_time)
            if self._state is RenewalState.REFRESHING and self._renewal_start_time
            else None,
            "pending_count": self.get_pending_count(),
            "stats": {
                "total": self._total_renewals,
                "successful": self._successful_renewals,
                "failed": self._failed_renewals,
            },
        }
