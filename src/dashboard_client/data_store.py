# src/dashboard_client/data_store.py

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, Optional, Sequence, Union

from .aggregate_cache import AggregateCache, AggregateConfig
from .client import ApiClient
from .domain_definitions import AGGREGATES, DOMAINS
from .entity_cache import DomainConfig, EntityCache
from .error_handler import ApiError
from .mutations import MutationEngine

lib_logger = logging.getLogger("dashboard_client")


class DataStore:
    """
    Registry of every domain cache, its mutation engine, and the aggregates.

    Owns the cross-domain operations: invalidation by name, a full reset
    (logout) and a forced refresh of everything.
    """

    def __init__(
        self,
        client: ApiClient,
        domains: Sequence[DomainConfig] = DOMAINS,
        aggregates: Sequence[AggregateConfig] = AGGREGATES,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.caches: Dict[str, EntityCache] = {}
        self.mutations: Dict[str, MutationEngine] = {}
        self.aggregates: Dict[str, AggregateCache] = {}

        for config in domains:
            cache = EntityCache(config, client, clock=clock)
            self.caches[config.name] = cache
            self.mutations[config.name] = MutationEngine(
                cache, client, invalidate=self.invalidate
            )
        for config in aggregates:
            self.aggregates[config.name] = AggregateCache(config, client, clock=clock)

        unknown = {
            dependent
            for config in domains
            for dependent in config.dependents
            if dependent not in self.caches and dependent not in self.aggregates
        }
        if unknown:
            raise ValueError(f"Unknown dependents: {', '.join(sorted(unknown))}")

    def cache(self, name: str) -> EntityCache:
        try:
            return self.caches[name]
        except KeyError:
            raise KeyError(f"No domain named '{name}'") from None

    def mutator(self, name: str) -> MutationEngine:
        self.cache(name)
        return self.mutations[name]

    def aggregate(self, name: str) -> AggregateCache:
        try:
            return self.aggregates[name]
        except KeyError:
            raise KeyError(f"No aggregate named '{name}'") from None

    def invalidate(self, names: Optional[Union[str, Iterable[str]]] = None) -> None:
        """
        Mark entries stale so the next read refetches.

        Args:
            names: One name, several names, or None for everything
        """
        if names is None:
            targets = list(self.caches) + list(self.aggregates)
        elif isinstance(names, str):
            targets = [names]
        else:
            targets = list(names)

        for name in targets:
            if name in self.caches:
                self.caches[name].invalidate()
            elif name in self.aggregates:
                self.aggregates[name].invalidate()
            else:
                lib_logger.warning(f"Ignoring invalidation of unknown entry '{name}'")
        lib_logger.debug(f"Invalidated: {', '.join(targets)}")

    def reset(self) -> None:
        """Drop all cached data (used on logout)."""
        for cache in self.caches.values():
            cache.reset()
        for aggregate in self.aggregates.values():
            aggregate.reset()
        lib_logger.info("Data store cleared")

    async def refresh_all(self) -> Dict[str, Optional[ApiError]]:
        """
        Force-refetch every domain and aggregate concurrently.

        Returns:
            Mapping of entry name to the ApiError it failed with, or None
        """
        names = list(self.caches) + list(self.aggregates)
        calls = [cache.fetch(force=True) for cache in self.caches.values()]
        calls += [
            aggregate.fetch(aggregate.params, force=True, subject=aggregate.subject)
            for aggregate in self.aggregates.values()
        ]
        results = await asyncio.gather(*calls, return_exceptions=True)

        outcome: Dict[str, Optional[ApiError]] = {}
        for name, result in zip(names, results):
            if isinstance(result, ApiError):
                outcome[name] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[name] = None

        failed = [name for name, error in outcome.items() if error is not None]
        if failed:
            lib_logger.warning(f"Failed to refresh some data: {', '.join(failed)}")
        else:
            lib_logger.info("Data refreshed successfully")
        return outcome
