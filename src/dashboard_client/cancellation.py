# src/dashboard_client/cancellation.py

import asyncio
from typing import Awaitable, Optional, TypeVar

from .error_handler import RequestCancelledError

T = TypeVar("T")


class CancelToken:
    """
    Cancellation handle a caller hands to a request.

    Calling cancel() makes the guarded request raise RequestCancelledError
    as soon as it is next scheduled; the underlying HTTP exchange is
    abandoned. One token may guard several requests.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelledError(self.reason)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        Raises:
            RequestCancelledError: if cancel() was called before completion
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise RequestCancelledError(self.reason)
