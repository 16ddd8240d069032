"""Optimistic synchronization between the annotation store and the REST API.

Each operation mutates the store immediately and returns an ``asyncio.Task``
for the network half. When the request fails the change is rolled back: the
whole pre-operation state is restored if nothing touched the store in the
meantime, otherwise a record-level compensating change is applied. Requests
for one record are serialized, so an edit made while its create is in flight
is sent with the server-assigned id once it is known.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import ValidationError

from backend.app.models import AnnotationCreate, AnnotationRecord

from .api import AnnotationApi, ApiError
from .cache import SnapshotCache
from .history import AnnotationStore, HistoryState

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"

WarningHandler = Callable[[str], None]


def new_temp_id() -> str:
    return f"{TEMP_PREFIX}{uuid4().hex}"


def is_temp_id(annotation_id: str) -> bool:
    return annotation_id.startswith(TEMP_PREFIX)


def _content(record: AnnotationRecord) -> Dict[str, Any]:
    return record.model_dump(exclude={"id", "created_at", "updated_at"})


class SyncAdapter:
    def __init__(
        self,
        store: AnnotationStore,
        api: AnnotationApi,
        cache: Optional[SnapshotCache] = None,
        on_warning: Optional[WarningHandler] = None,
    ):
        self.store = store
        self.api = api
        self.cache = cache
        self.on_warning = on_warning
        self.warnings: List[str] = []
        self.video: Optional[str] = None
        # server-confirmed records, what the cache holds
        self._persisted: Dict[str, AnnotationRecord] = {}
        # temp id -> server id, while requests for the record are queued
        self._canonical: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[asyncio.Lock, int] = {}
        self._pending: Set[asyncio.Task] = set()

    def canonical_id(self, local_id: str) -> str:
        return self._canonical.get(local_id, local_id)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every in-flight request has settled."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def load(self, video: Optional[str] = None) -> bool:
        self.video = video
        try:
            records = await self.api.list_annotations(video)
        except ApiError as e:
            cached = self.cache.load(video) if self.cache is not None else None
            if cached is not None:
                self.store.replace_all(cached)
                self._persisted = {record.id: record for record in cached}
                self._warn(f"{e.message}; showing {len(cached)} cached annotations")
            else:
                self.store.replace_all([])
                self._persisted = {}
                self._warn(f"{e.message}; starting with no annotations")
            return False
        self.store.replace_all(records)
        self._persisted = {record.id: record for record in records}
        self._save_cache()
        return True

    def create(self, annotation: AnnotationCreate) -> asyncio.Task:
        temp_id = new_temp_id()
        record = AnnotationRecord.model_validate({**annotation.model_dump(), "id": temp_id})
        before = self.store.state
        after = self.store.create(record)
        lock = self._lock_for(temp_id)
        return self._spawn(self._push_create(temp_id, annotation, record, before, after, lock))

    def update(self, annotation_id: str, patch: Dict[str, Any]) -> asyncio.Task:
        annotation_id = self._local_id(annotation_id)
        previous = self.store.get(annotation_id)
        if previous is None:
            return self._spawn(self._skip(f"annotation {annotation_id} is not loaded"))
        before = self.store.state
        try:
            after = self.store.update(annotation_id, patch)
        except ValidationError as e:
            reasons = "; ".join(err["msg"] for err in e.errors())
            self._warn(f"Annotation change rejected: {reasons}")
            return self._spawn(self._skip(f"invalid change to {annotation_id}"))
        patched = self.store.get(annotation_id)
        lock = self._lock_for(annotation_id)
        return self._spawn(
            self._push_update(annotation_id, patch, previous, patched, before, after, lock)
        )

    def delete(self, annotation_id: str) -> asyncio.Task:
        annotation_id = self._local_id(annotation_id)
        removed = self.store.get(annotation_id)
        if removed is None:
            return self._spawn(self._skip(f"annotation {annotation_id} is not loaded"))
        index = self.store.index_of(annotation_id)
        before = self.store.state
        after = self.store.delete(annotation_id)
        lock = self._lock_for(annotation_id)
        return self._spawn(self._push_delete(annotation_id, removed, index, before, after, lock))

    async def _push_create(
        self,
        temp_id: str,
        annotation: AnnotationCreate,
        sent: AnnotationRecord,
        before: HistoryState,
        after: HistoryState,
        lock: asyncio.Lock,
    ) -> Optional[AnnotationRecord]:
        try:
            async with lock:
                try:
                    persisted = await self.api.create_annotation(annotation)
                except ApiError as e:
                    self._rollback(before, after, lambda: self.store.discard(temp_id))
                    self._warn(f"Annotation was not saved: {e.message}")
                    return None
                self._canonical[temp_id] = persisted.id
                self._locks[persisted.id] = lock
                self._persisted[persisted.id] = persisted
                self.store.reassign_id(temp_id, persisted, sent=sent)
                self._save_cache()
                return persisted
        finally:
            self._release(lock)

    async def _push_update(
        self,
        local_id: str,
        patch: Dict[str, Any],
        previous: AnnotationRecord,
        patched: AnnotationRecord,
        before: HistoryState,
        after: HistoryState,
        lock: asyncio.Lock,
    ) -> Optional[AnnotationRecord]:
        try:
            async with lock:
                remote_id = self.canonical_id(local_id)
                if is_temp_id(remote_id):
                    # its create failed and has already been rolled back
                    return None
                try:
                    persisted = await self.api.update_annotation(remote_id, patch)
                except ApiError as e:
                    self._rollback(
                        before,
                        after,
                        lambda: self._revert_update(remote_id, patched, previous),
                    )
                    self._warn(f"Annotation change was not saved: {e.message}")
                    return None
                self._persisted[remote_id] = persisted
                current = self.store.get(remote_id)
                if current is not None and _content(current) == _content(patched):
                    self.store.put(persisted)
                self._save_cache()
                return persisted
        finally:
            self._release(lock)

    async def _push_delete(
        self,
        local_id: str,
        removed: AnnotationRecord,
        index: int,
        before: HistoryState,
        after: HistoryState,
        lock: asyncio.Lock,
    ) -> bool:
        try:
            async with lock:
                remote_id = self.canonical_id(local_id)
                if is_temp_id(remote_id):
                    return True
                try:
                    await self.api.delete_annotation(remote_id)
                except ApiError as e:
                    restored = removed.model_copy(update={"id": remote_id})
                    self._rollback(before, after, lambda: self.store.insert(restored, index))
                    self._warn(f"Annotation was not deleted: {e.message}")
                    return False
                self._persisted.pop(remote_id, None)
                self._save_cache()
                return True
        finally:
            self._release(lock)

    async def _skip(self, reason: str) -> None:
        logger.debug("Nothing to sync: %s", reason)
        return None

    def _local_id(self, annotation_id: str) -> str:
        """The id ``annotation_id`` is stored under now, for stale temp ids."""
        if self.store.get(annotation_id) is None:
            return self.canonical_id(annotation_id)
        return annotation_id

    def _revert_update(
        self, remote_id: str, patched: AnnotationRecord, previous: AnnotationRecord
    ) -> None:
        current = self.store.get(remote_id)
        if current is None or _content(current) != _content(patched):
            # changed again since; the later write wins
            return
        self.store.put(
            previous.model_copy(
                update={
                    "id": remote_id,
                    "created_at": current.created_at,
                    "updated_at": current.updated_at,
                }
            )
        )

    def _rollback(
        self, before: HistoryState, after: HistoryState, compensate: Callable[[], Any]
    ) -> None:
        if self.store.state is after:
            self.store.restore(before)
        else:
            compensate()

    def _lock_for(self, annotation_id: str) -> asyncio.Lock:
        lock = self._locks.get(annotation_id)
        if lock is None:
            lock = self._locks[annotation_id] = asyncio.Lock()
        self._lock_users[lock] = self._lock_users.get(lock, 0) + 1
        return lock

    def _release(self, lock: asyncio.Lock) -> None:
        """Forget a record's lock and temp id once no request uses them."""
        users = self._lock_users.get(lock, 0) - 1
        if users > 0:
            self._lock_users[lock] = users
            return
        self._lock_users.pop(lock, None)
        for key in [key for key, value in self._locks.items() if value is lock]:
            del self._locks[key]
            self._canonical.pop(key, None)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _save_cache(self) -> None:
        if self.cache is None:
            return
        self.cache.save(list(self._persisted.values()), video=self.video)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)
        if self.on_warning is not None:
            self.on_warning(message)
