# src/dashboard_client/mutations.py

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .cancellation import CancelToken
from .client import ApiClient, ProgressCallback
from .entity_cache import PROVISIONAL_PREFIX, Entity, EntityCache, is_provisional
from .error_handler import ApiError

lib_logger = logging.getLogger("dashboard_client")

__all__ = ["MutationEngine", "MutationRecord", "PROVISIONAL_PREFIX", "is_provisional"]


@dataclass
class MutationRecord:
    """
    Snapshot taken before an optimistic update, restored on failure.

    `seq` is the cache's write stamp of the optimistic value and `epoch` the
    cache epoch it was written under; a later local write or a reset makes
    the record stale.
    """

    entity_id: str
    previous_value: Optional[Entity]
    optimistic_value: Entity
    seq: int = 0
    epoch: int = 0


class MutationEngine:
    """
    Create/update/delete against one domain with optimistic local state.

    A failed or cancelled write leaves the cache exactly as it was before the
    write began. Confirmed writes invalidate the domain's dependents (and, for
    create, the domain itself) through `invalidate`.
    """

    def __init__(
        self,
        cache: EntityCache,
        client: ApiClient,
        invalidate: Optional[Callable[[Iterable[str]], None]] = None,
    ):
        """
        Args:
            cache: The domain's EntityCache
            client: Request pipeline
            invalidate: Cross-domain invalidation hook, called with the names
                to mark stale. Without one only this cache is invalidated.
        """
        self.cache = cache
        self.client = client
        self.config = cache.config
        self._invalidate = invalidate

    def _require(self, operation: str) -> None:
        if not self.config.supports(operation):
            raise ValueError(f"{self.config.name} does not support '{operation}'")

    async def create(
        self,
        data: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        variant: Optional[str] = None,
    ) -> Entity:
        """
        Args:
            variant: Name of one of the domain's create_variants; the default
                creation endpoint when None
        """
        self._require("create")
        if variant is None:
            path = self.config.create_path or self.config.path
        elif variant in self.config.create_variants:
            path = self.config.create_variants[variant]
        else:
            raise ValueError(f"{self.config.name} has no '{variant}' create endpoint")

        provisional_id = f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex[:12]}"
        epoch = self.cache.epoch
        self.cache.prepend({**data, self.config.id_field: provisional_id})

        try:
            result = await self.client.post(path, json=data, cancel_token=cancel_token)
            entity = self.cache.unwrap_entity(result)
            self.cache.id_of(entity)
        except (ApiError, asyncio.CancelledError) as e:
            if epoch == self.cache.epoch:
                self.cache.discard(provisional_id)
            lib_logger.info(f"[{self.config.name}] create rolled back: {e!r}")
            raise

        if epoch == self.cache.epoch:
            self.cache.swap(provisional_id, entity)
        self._after_write(include_self=True)
        return entity

    async def upload_create(
        self,
        files: Any,
        data: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Entity:
        """
        Create an entity from a multipart upload. Nothing is shown before the
        server answers since the entity only exists once the file is parsed.
        """
        self._require("upload")
        epoch = self.cache.epoch
        result = await self.client.upload(
            self.config.upload_path,
            files,
            data=data,
            on_progress=on_progress,
            cancel_token=cancel_token,
        )
        entity = self.cache.unwrap_entity(result)
        self.cache.id_of(entity)
        if epoch == self.cache.epoch:
            self.cache.prepend(entity)
        self._after_write(include_self=True)
        return entity

    async def update(
        self,
        entity_id: Any,
        changes: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        path_suffix: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Entity:
        """
        Apply `changes` locally, send them, and keep the server's version.

        Args:
            path_suffix: Item sub-path to send to instead of the item itself
            body: Request body when it differs from `changes`

        A response that carries no entity confirms the optimistic value.
        """
        if path_suffix is None:
            self._require("update")
        entity_id = str(entity_id)
        previous = self.cache.get(entity_id)
        record = MutationRecord(
            entity_id=entity_id,
            previous_value=previous,
            optimistic_value={**(previous or {}), **changes},
            epoch=self.cache.epoch,
        )
        if previous is not None:
            self.cache.replace(entity_id, record.optimistic_value)
            record.seq = self.cache.write_stamp(entity_id)
        else:
            record.seq = self.cache.current_stamp()

        try:
            result = await self.client.request(
                self.config.update_method,
                self.config.item_path(entity_id, path_suffix),
                json=changes if body is None else body,
                cancel_token=cancel_token,
            )
        except (ApiError, asyncio.CancelledError) as e:
            self._rollback(record)
            lib_logger.info(f"[{self.config.name}] update of {entity_id} rolled back: {e!r}")
            raise

        entity = self._confirmed_entity(result)
        if entity is None:
            # No entity in the response: the optimistic value stands, if there is one
            entity = record.optimistic_value
            confirmed = previous is not None
        else:
            confirmed = True
        if confirmed and not self._superseded(record):
            self.cache.replace(entity_id, entity)
        self._after_write()
        return entity

    def _confirmed_entity(self, result: Any) -> Optional[Entity]:
        """The entity carried by a write response, or None when it has none."""
        if not isinstance(result, dict):
            return None
        entity = self.cache.unwrap_entity(result)
        if entity.get(self.config.id_field) is None:
            return None
        return entity

    async def update_status(
        self,
        entity_id: Any,
        status: str,
        notes: str = "",
        cancel_token: Optional[CancelToken] = None,
    ) -> Entity:
        """Optimistically move an entity to `status` through its status endpoint."""
        self._require("status")
        changes = {
            "status": status,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        return await self.update(
            entity_id,
            changes,
            cancel_token=cancel_token,
            path_suffix=self.config.status_suffix,
            body={"status": status, "notes": notes},
        )

    def _superseded(self, record: MutationRecord) -> bool:
        """True when a reset or a newer local write owns the entity now."""
        if self.cache.epoch != record.epoch:
            return True
        return self.cache.write_stamp(record.entity_id) > record.seq

    def _rollback(self, record: MutationRecord) -> None:
        if record.previous_value is None or self._superseded(record):
            return
        # A fetch that landed meanwhile holds the server's state; keep it
        if self.cache.get(record.entity_id) is record.optimistic_value:
            self.cache.replace(record.entity_id, record.previous_value)

    async def delete(
        self, entity_id: Any, cancel_token: Optional[CancelToken] = None
    ) -> None:
        """Remove an entity once the server has confirmed the deletion."""
        self._require("delete")
        entity_id = str(entity_id)
        await self.client.delete(self.config.item_path(entity_id), cancel_token=cancel_token)
        self.cache.discard(entity_id)
        self._after_write()

    async def bulk_update(
        self,
        entity_ids: List[Any],
        changes: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
    ) -> Any:
        """
        Apply the same changes to many entities through the domain's bulk
        endpoint. Local copies are patched after confirmation.
        """
        self._require("bulk")
        if not self.config.bulk_update_path:
            raise ValueError(f"{self.config.name} has no bulk update endpoint")
        ids = [str(i) for i in entity_ids]
        result = await self.client.post(
            self.config.bulk_update_path,
            json={self.config.bulk_ids_key: ids, **changes},
            cancel_token=cancel_token,
        )
        for entity_id in ids:
            current = self.cache.get(entity_id)
            if current is not None:
                self.cache.replace(entity_id, {**current, **changes})
        self._after_write()
        return result

    async def bulk_delete(
        self, entity_ids: List[Any], cancel_token: Optional[CancelToken] = None
    ) -> Any:
        self._require("bulk")
        if not self.config.bulk_delete_path:
            raise ValueError(f"{self.config.name} has no bulk delete endpoint")
        ids = [str(i) for i in entity_ids]
        result = await self.client.post(
            self.config.bulk_delete_path,
            json={self.config.bulk_ids_key: ids},
            cancel_token=cancel_token,
        )
        for entity_id in ids:
            self.cache.discard(entity_id)
        self._after_write()
        return result

    def _after_write(self, include_self: bool = False) -> None:
        names = list(self.config.dependents)
        if include_self:
            names.insert(0, self.config.name)
        if not names:
            return
        if self._invalidate is not None:
            self._invalidate(names)
        elif include_self:
            self.cache.invalidate()
