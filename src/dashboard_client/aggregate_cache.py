# src/dashboard_client/aggregate_cache.py

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .cancellation import CancelToken
from .client import ApiClient
from .entity_cache import TTLClass
from .error_handler import ApiError

lib_logger = logging.getLogger("dashboard_client")


@dataclass
class AggregateConfig:
    """
    Attributes:
        subject_path: Path template ("{id}") used when the value is asked for
            one entity instead of the whole domain
        value_key: Key of the value inside the response's data, when wrapped
    """

    name: str
    path: str
    ttl: TTLClass = TTLClass.LONG
    default_params: Dict[str, Any] = field(default_factory=dict)
    subject_path: Optional[str] = None
    value_key: Optional[str] = None


class AggregateCache:
    """
    Caches one server-computed value (dashboard totals, analytics, limits,
    activity feeds).

    The value is tied to the parameters and subject it was fetched with;
    asking for others, or asking after the TTL or an invalidation, refetches.
    """

    def __init__(
        self,
        config: AggregateConfig,
        client: ApiClient,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client
        self._clock = clock
        self.value: Any = None
        self.params: Optional[Dict[str, Any]] = None
        self.subject: Optional[str] = None
        self.last_fetch: Optional[float] = None
        self.is_loading = False
        self.error: Optional[ApiError] = None

    @property
    def name(self) -> str:
        return self.config.name

    def is_valid(
        self, params: Optional[Dict[str, Any]] = None, subject: Optional[Any] = None
    ) -> bool:
        if self.last_fetch is None:
            return False
        if self._resolve(params) != self.params:
            return False
        if (None if subject is None else str(subject)) != self.subject:
            return False
        return (self._clock() - self.last_fetch) < self.config.ttl.seconds

    def _resolve(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {**self.config.default_params, **(params or {})}

    def _path(self, subject: Optional[str]) -> str:
        if subject is None:
            return self.config.path
        if not self.config.subject_path:
            raise ValueError(f"{self.name} cannot be fetched for a single entity")
        return self.config.subject_path.format(id=subject)

    async def fetch(
        self,
        params: Optional[Dict[str, Any]] = None,
        force: bool = False,
        cancel_token: Optional[CancelToken] = None,
        subject: Optional[Any] = None,
    ) -> Any:
        """
        Args:
            subject: Id of the entity to fetch the value for (subject_path)
        """
        if not force and self.is_valid(params, subject):
            return self.value

        subject = None if subject is None else str(subject)
        path = self._path(subject)
        resolved = self._resolve(params)
        self.is_loading = True
        self.error = None
        try:
            value = await self.client.get(
                path,
                params=resolved or None,
                cancel_token=cancel_token,
                retry_safe=True,
            )
        except ApiError as e:
            if e.should_notify:
                self.error = e
            raise
        finally:
            self.is_loading = False

        key = self.config.value_key
        if key and isinstance(value, dict) and key in value:
            value = value[key]
        self.value = value
        self.params = resolved
        self.subject = subject
        self.last_fetch = self._clock()
        return value

    def invalidate(self) -> None:
        self.last_fetch = None

    def reset(self) -> None:
        self.value = None
        self.params = None
        self.subject = None
        self.last_fetch = None
        self.is_loading = False
        self.error = None
