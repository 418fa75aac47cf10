# src/dashboard_client/entity_cache.py

"""
Per-domain entity cache.

Each domain (deals, invoices, ...) gets one EntityCache holding the current
page of entities in server order, an id index over exactly that page, the
filter/pagination state used to fetch it, and the time of the last
successful fetch. Entities that fall out of the page, or that were loaded
one at a time, are kept in a separate `details` map so single lookups stay
warm without disturbing the list.

Local writes (made by the MutationEngine) are stamped with a per-cache
sequence number. When a fetch lands, entities written locally after that
fetch started keep their local state instead of the fetched one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from .cancellation import CancelToken
from .client import ApiClient
from .error_handler import ApiError, RequestCancelledError, UnexpectedResponseError

lib_logger = logging.getLogger("dashboard_client")

Entity = Dict[str, Any]

# Ids of entities a pending create has inserted but the server has not confirmed
PROVISIONAL_PREFIX = "temp-"


def is_provisional(entity_id: Any) -> bool:
    return str(entity_id).startswith(PROVISIONAL_PREFIX)


class TTLClass(Enum):
    """Cache lifetimes, in seconds."""

    SHORT = 5 * 60
    MEDIUM = 15 * 60
    LONG = 30 * 60
    VERY_LONG = 60 * 60

    @property
    def seconds(self) -> float:
        return float(self.value)


ALL_OPERATIONS = frozenset({"create", "update", "delete", "upload", "status", "bulk"})
DEFAULT_OPERATIONS = frozenset({"create", "update", "delete"})


@dataclass
class Pagination:
    page: int = 1
    limit: int = 20
    total: int = 0
    has_more: bool = False


@dataclass
class DomainConfig:
    """
    Static description of one entity domain.

    Attributes:
        name: Registry name, also used for cross-domain invalidation
        path: Collection path (GET list, POST create unless create_path)
        list_key: Key of the entity list inside the list response's data
        id_field: Identity attribute of an entity
        ttl: Validity of the list fetch
        detail_ttl: Validity of an individually fetched entity
        update_method: HTTP verb the domain uses for partial updates
        create_path: Creation endpoint when it differs from `path`
        detail_key: Key wrapping the entity in single-entity responses
        dependents: Names of domains/aggregates invalidated by writes here
        default_filters: Initial (and reset) filter values
        page_limit: Page size sent with list fetches
        bulk_update_path / bulk_delete_path: Bulk endpoints, if any
        bulk_ids_key: Body key carrying the ids of a bulk call
        create_variants: Named alternative creation endpoints
        upload_path: Multipart creation endpoint
        status_suffix: Item sub-path of the status endpoint
        operations: Writes the API offers for this domain, out of
            create, update, delete, upload, status and bulk
    """

    name: str
    path: str
    list_key: str
    id_field: str = "_id"
    ttl: TTLClass = TTLClass.SHORT
    detail_ttl: TTLClass = TTLClass.MEDIUM
    update_method: str = "PUT"
    create_path: Optional[str] = None
    detail_key: Optional[str] = None
    dependents: Tuple[str, ...] = ()
    default_filters: Dict[str, Any] = field(default_factory=dict)
    page_limit: int = 20
    bulk_update_path: Optional[str] = None
    bulk_delete_path: Optional[str] = None
    bulk_ids_key: str = "ids"
    create_variants: Dict[str, str] = field(default_factory=dict)
    upload_path: Optional[str] = None
    status_suffix: Optional[str] = None
    operations: FrozenSet[str] = DEFAULT_OPERATIONS

    def __post_init__(self):
        unknown = set(self.operations) - ALL_OPERATIONS
        if unknown:
            raise ValueError(f"{self.name}: unknown operations {sorted(unknown)}")
        required = {
            "upload": self.upload_path,
            "status": self.status_suffix,
            "bulk": self.bulk_update_path or self.bulk_delete_path,
        }
        for operation, setting in required.items():
            if operation in self.operations and not setting:
                raise ValueError(f"{self.name}: '{operation}' needs an endpoint")

    def supports(self, operation: str) -> bool:
        return operation in self.operations

    def item_path(self, entity_id: str, suffix: Optional[str] = None) -> str:
        path = f"{self.path}/{entity_id}"
        return f"{path}/{suffix}" if suffix else path


@dataclass
class CacheEntry:
    items: List[Entity] = field(default_factory=list)
    by_id: Dict[str, Entity] = field(default_factory=dict)
    details: Dict[str, Entity] = field(default_factory=dict)
    last_fetch: Optional[float] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    pagination: Pagination = field(default_factory=Pagination)
    is_loading: bool = False
    error: Optional[ApiError] = None


class EntityCache:
    def __init__(
        self,
        config: DomainConfig,
        client: ApiClient,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client
        self._clock = clock
        self.entry = self._new_entry()

        self._epoch = 0
        self._write_seq = 0
        self._written_at: Dict[str, int] = {}
        self._detail_fetched_at: Dict[str, float] = {}
        self._loading = 0
        self._fetch_seq = 0
        self._applied_fetch = 0
        self._inflight: Optional[asyncio.Future] = None

    def _new_entry(self) -> CacheEntry:
        return CacheEntry(
            filters=dict(self.config.default_filters),
            pagination=Pagination(limit=self.config.page_limit),
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def items(self) -> List[Entity]:
        return list(self.entry.items)

    def id_of(self, entity: Entity) -> str:
        value = entity.get(self.config.id_field) if isinstance(entity, dict) else None
        if value is None:
            raise UnexpectedResponseError(
                f"{self.name} entity is missing '{self.config.id_field}'", payload=entity
            )
        return str(value)

    def get(self, entity_id: Any) -> Optional[Entity]:
        entity_id = str(entity_id)
        if entity_id in self.entry.by_id:
            return self.entry.by_id[entity_id]
        return self.entry.details.get(entity_id)

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def is_valid(self, ttl: Optional[TTLClass] = None) -> bool:
        last_fetch = self.entry.last_fetch
        if last_fetch is None:
            return False
        duration = (ttl or self.config.ttl).seconds
        return (self._clock() - last_fetch) < duration

    def _detail_is_valid(self, entity_id: str) -> bool:
        if self.is_valid(self.config.detail_ttl):
            return True
        fetched_at = self._detail_fetched_at.get(entity_id)
        return (
            fetched_at is not None
            and (self._clock() - fetched_at) < self.config.detail_ttl.seconds
        )

    def invalidate(self) -> None:
        """Mark the cached data stale; it is kept until the next fetch lands."""
        self.entry.last_fetch = None
        self._detail_fetched_at.clear()

    def reset(self) -> None:
        """Drop everything; fetches still in flight are discarded on arrival."""
        self._epoch += 1
        self.entry = self._new_entry()
        self._written_at.clear()
        self._detail_fetched_at.clear()
        self._loading = 0
        self._inflight = None

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def fetch(
        self, force: bool = False, cancel_token: Optional[CancelToken] = None
    ) -> List[Entity]:
        """
        Return the current page, calling the API only when needed.

        A valid entry is served from memory. A non-forced call made while
        another fetch is in flight waits for that fetch instead of issuing
        a second one.

        Raises:
            ApiError: the fetch failed; prior data is kept and entry.error set
        """
        if not force:
            if self.is_valid():
                return self.items
            if self._inflight is not None and not self._inflight.done():
                lib_logger.debug(f"[{self.name}] joining in-flight fetch")
                return list(await asyncio.shield(self._inflight))

        future = asyncio.get_running_loop().create_future()
        self._inflight = future
        try:
            items = await self._load(cancel_token)
        except asyncio.CancelledError:
            self._settle(future, error=RequestCancelledError())
            raise
        except Exception as e:
            self._settle(future, error=e)
            raise
        else:
            self._settle(future, result=items)
            return list(items)
        finally:
            if self._inflight is future:
                self._inflight = None

    @staticmethod
    def _settle(future: asyncio.Future, result: Any = None, error: Exception = None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
            # Joiners re-raise it; without any the owner already did
            future.exception()
        else:
            future.set_result(result)

    async def _load(self, cancel_token: Optional[CancelToken]) -> List[Entity]:
        entry = self.entry
        epoch = self._epoch
        started_seq = self._write_seq
        self._fetch_seq += 1
        fetch_no = self._fetch_seq

        previous_error = entry.error
        self._loading += 1
        entry.is_loading = True
        entry.error = None
        try:
            data = await self.client.get(
                self.config.path,
                params=self._query_params(),
                cancel_token=cancel_token,
                retry_safe=True,
            )
            items, total, has_more = self._parse_page(data)
        except RequestCancelledError:
            self._finish_loading(epoch)
            if epoch == self._epoch:
                entry.error = previous_error
            raise
        except ApiError as e:
            self._finish_loading(epoch)
            if epoch == self._epoch:
                entry.error = e
            lib_logger.warning(f"[{self.name}] fetch failed: {e}")
            raise
        except asyncio.CancelledError:
            self._finish_loading(epoch)
            if epoch == self._epoch:
                entry.error = previous_error
            raise

        self._finish_loading(epoch)
        if epoch != self._epoch or fetch_no < self._applied_fetch:
            lib_logger.debug(f"[{self.name}] discarding superseded fetch #{fetch_no}")
            return self.items

        self._applied_fetch = fetch_no
        self._apply_page(items, started_seq)
        entry.pagination.total = total
        entry.pagination.has_more = has_more
        entry.last_fetch = self._clock()
        lib_logger.debug(
            f"[{self.name}] fetched {len(entry.items)} item(s), "
            f"page {entry.pagination.page}, total {total}"
        )
        return self.items

    def _finish_loading(self, epoch: int) -> None:
        if epoch != self._epoch:
            return
        self._loading = max(0, self._loading - 1)
        self.entry.is_loading = self._loading > 0

    def _query_params(self) -> Dict[str, Any]:
        params = {
            key: value
            for key, value in self.entry.filters.items()
            if value is not None and value != ""
        }
        params["page"] = self.entry.pagination.page
        params["limit"] = self.entry.pagination.limit
        return params

    def _parse_page(self, data: Any) -> Tuple[List[Entity], int, bool]:
        """
        Accepts a bare list, {<list_key>, total, hasMore} or
        {<list_key>, pagination: {page, pages, total}}.
        """
        if isinstance(data, list):
            items, meta = data, {}
        elif isinstance(data, dict) and isinstance(data.get(self.config.list_key), list):
            items, meta = data[self.config.list_key], data
        else:
            raise UnexpectedResponseError(
                f"Malformed {self.name} list response", payload=data
            )
        for entity in items:
            self.id_of(entity)

        page_meta = meta.get("pagination") if isinstance(meta.get("pagination"), dict) else {}
        total = meta.get("total", page_meta.get("total", len(items)))
        try:
            total = int(total)
        except (TypeError, ValueError):
            total = len(items)

        if "hasMore" in meta:
            has_more = bool(meta["hasMore"])
        elif "hasMore" in page_meta:
            has_more = bool(page_meta["hasMore"])
        elif "pages" in page_meta:
            has_more = page_meta.get("page", self.entry.pagination.page) < page_meta["pages"]
        else:
            pagination = self.entry.pagination
            has_more = pagination.page * pagination.limit < total
        return items, total, has_more

    def _apply_page(self, fetched: List[Entity], started_seq: int) -> None:
        entry = self.entry
        written_since = {
            entity_id
            for entity_id, seq in self._written_at.items()
            if seq > started_seq
        }

        items: List[Entity] = []
        seen = set()
        for entity in fetched:
            entity_id = self.id_of(entity)
            if entity_id in seen:
                continue
            if entity_id in written_since:
                local = entry.by_id.get(entity_id) or entry.details.get(entity_id)
                if local is None:
                    # removed locally after this fetch started
                    continue
                entity = local
            seen.add(entity_id)
            items.append(entity)

        # Entities created locally after the fetch started, and creates still
        # awaiting confirmation, stay on top
        local_only = [
            entity
            for entity_id, entity in entry.by_id.items()
            if entity_id not in seen
            and (entity_id in written_since or is_provisional(entity_id))
        ]
        if local_only:
            order = {self.id_of(e): i for i, e in enumerate(entry.items)}
            local_only.sort(key=lambda e: order.get(self.id_of(e), 0))
            items = local_only + items

        new_by_id = {self.id_of(entity): entity for entity in items}
        for entity_id, entity in entry.by_id.items():
            if entity_id not in new_by_id:
                entry.details[entity_id] = entity
        for entity_id in new_by_id:
            entry.details.pop(entity_id, None)

        entry.items = items
        entry.by_id = new_by_id

    async def fetch_by_id(
        self,
        entity_id: Any,
        force: bool = False,
        cancel_token: Optional[CancelToken] = None,
    ) -> Entity:
        """
        Return one entity, from memory when it is cached and fresh under the
        domain's detail TTL.
        """
        entity_id = str(entity_id)
        cached = self.get(entity_id)
        if not force and cached is not None and self._detail_is_valid(entity_id):
            return cached

        epoch = self._epoch
        started_seq = self._write_seq
        data = await self.client.get(
            self.config.item_path(entity_id),
            cancel_token=cancel_token,
            retry_safe=True,
        )
        entity = self.unwrap_entity(data)
        if epoch != self._epoch:
            return entity
        if self._written_at.get(entity_id, -1) > started_seq:
            local = self.get(entity_id)
            return local if local is not None else entity

        self._store_entity(entity_id, entity)
        self._detail_fetched_at[entity_id] = self._clock()
        return entity

    def unwrap_entity(self, data: Any) -> Entity:
        key = self.config.detail_key
        if key and isinstance(data, dict) and isinstance(data.get(key), dict):
            data = data[key]
        if not isinstance(data, dict):
            raise UnexpectedResponseError(
                f"Malformed {self.name} entity response", payload=data
            )
        return data

    async def set_filters(self, **filters: Any) -> List[Entity]:
        """Merge filters, go back to page 1 and refetch."""
        self.entry.filters.update(filters)
        self.entry.pagination.page = 1
        return await self.fetch(force=True)

    async def reset_filters(self) -> List[Entity]:
        self.entry.filters = dict(self.config.default_filters)
        self.entry.pagination.page = 1
        return await self.fetch(force=True)

    async def set_page(self, page: int) -> List[Entity]:
        self.entry.pagination.page = max(1, int(page))
        return await self.fetch(force=True)

    # ------------------------------------------------------------------
    # Local writes (used by MutationEngine)
    # ------------------------------------------------------------------

    @property
    def epoch(self) -> int:
        """Bumped by reset(); work started under an older epoch is stale."""
        return self._epoch

    def write_stamp(self, entity_id: str) -> int:
        """Sequence number of the latest local write to `entity_id` (0 if none)."""
        return self._written_at.get(str(entity_id), 0)

    def current_stamp(self) -> int:
        return self._write_seq

    def _stamp(self, *entity_ids: str) -> None:
        self._write_seq += 1
        for entity_id in entity_ids:
            self._written_at[entity_id] = self._write_seq

    def _store_entity(self, entity_id: str, entity: Entity) -> None:
        entry = self.entry
        if entity_id in entry.by_id:
            entry.by_id[entity_id] = entity
            entry.items = [
                entity if self.id_of(existing) == entity_id else existing
                for existing in entry.items
            ]
        else:
            entry.details[entity_id] = entity

    def prepend(self, entity: Entity) -> None:
        entity_id = self.id_of(entity)
        self._stamp(entity_id)
        if entity_id in self.entry.by_id:
            self._store_entity(entity_id, entity)
            return
        self.entry.details.pop(entity_id, None)
        self.entry.items.insert(0, entity)
        self.entry.by_id[entity_id] = entity

    def replace(self, entity_id: str, entity: Entity) -> None:
        self._stamp(entity_id)
        self._store_entity(entity_id, entity)

    def discard(self, entity_id: str) -> Optional[Entity]:
        """Remove an entity everywhere; returns what was removed."""
        entry = self.entry
        self._stamp(entity_id)
        removed = entry.by_id.pop(entity_id, None)
        if removed is not None:
            entry.items = [e for e in entry.items if self.id_of(e) != entity_id]
        detail = entry.details.pop(entity_id, None)
        self._detail_fetched_at.pop(entity_id, None)
        return removed if removed is not None else detail

    def swap(self, provisional_id: str, entity: Entity) -> None:
        """
        Replace a provisional entity with the server's. The provisional one's
        list position is kept; if the real id is already listed (a fetch got
        there first) the provisional entry is dropped instead.
        """
        entry = self.entry
        entity_id = self.id_of(entity)
        self._stamp(provisional_id, entity_id)

        if entity_id != provisional_id and entity_id in entry.by_id:
            self.discard(provisional_id)
            self._store_entity(entity_id, entity)
            return

        if provisional_id in entry.by_id:
            entry.by_id.pop(provisional_id)
            entry.items = [
                entity if self.id_of(existing) == provisional_id else existing
                for existing in entry.items
            ]
            entry.by_id[entity_id] = entity
        else:
            entry.items.insert(0, entity)
            entry.by_id[entity_id] = entity
        entry.details.pop(entity_id, None)
        entry.details.pop(provisional_id, None)
