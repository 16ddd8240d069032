"""Annotation store with linear undo/redo history.

Every user mutation pushes the previous annotation set onto the undo stack and
clears the redo stack. ``replace_all`` sets a new baseline without history.
The ``apply_*`` functions are pure; ``AnnotationStore`` owns the current state
and notifies subscribers when it changes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from backend.app.models import AnnotationRecord, merge_record

logger = logging.getLogger(__name__)

Snapshot = Tuple[AnnotationRecord, ...]
Listener = Callable[["HistoryState"], None]


@dataclass(frozen=True)
class HistoryState:
    live: Snapshot = ()
    undo_stack: Tuple[Snapshot, ...] = ()
    redo_stack: Tuple[Snapshot, ...] = ()


def _index_of(snapshot: Snapshot, annotation_id: str) -> Optional[int]:
    for idx, record in enumerate(snapshot):
        if record.id == annotation_id:
            return idx
    return None


def _commit(state: HistoryState, live: Snapshot) -> HistoryState:
    return HistoryState(
        live=live,
        undo_stack=state.undo_stack + (state.live,),
        redo_stack=(),
    )


def apply_create(state: HistoryState, record: AnnotationRecord) -> HistoryState:
    if _index_of(state.live, record.id) is not None:
        logger.warning("Refusing to create duplicate annotation id %s", record.id)
        return state
    return _commit(state, state.live + (record,))


def apply_update(
    state: HistoryState, annotation_id: str, patch: Dict[str, Any]
) -> HistoryState:
    idx = _index_of(state.live, annotation_id)
    if idx is None:
        return _commit(state, state.live)
    updated = merge_record(state.live[idx], patch)
    return _commit(state, state.live[:idx] + (updated,) + state.live[idx + 1:])


def apply_delete(state: HistoryState, annotation_id: str) -> HistoryState:
    live = tuple(record for record in state.live if record.id != annotation_id)
    return _commit(state, live)


def apply_replace_all(state: HistoryState, records: Iterable[AnnotationRecord]) -> HistoryState:
    unique: List[AnnotationRecord] = []
    seen = set()
    for record in records:
        if record.id in seen:
            logger.warning("Dropping duplicate annotation id %s", record.id)
            continue
        seen.add(record.id)
        unique.append(record)
    return replace(state, live=tuple(unique))


def apply_undo(state: HistoryState) -> HistoryState:
    if not state.undo_stack:
        return state
    return HistoryState(
        live=state.undo_stack[-1],
        undo_stack=state.undo_stack[:-1],
        redo_stack=state.redo_stack + (state.live,),
    )


def apply_redo(state: HistoryState) -> HistoryState:
    if not state.redo_stack:
        return state
    return HistoryState(
        live=state.redo_stack[-1],
        undo_stack=state.undo_stack + (state.live,),
        redo_stack=state.redo_stack[:-1],
    )


"""
Reconciliation against the remote store. None of these touch history.
"""
def _map_snapshots(
    state: HistoryState, fn: Callable[[Snapshot], Snapshot]
) -> HistoryState:
    return HistoryState(
        live=fn(state.live),
        undo_stack=tuple(fn(snapshot) for snapshot in state.undo_stack),
        redo_stack=tuple(fn(snapshot) for snapshot in state.redo_stack),
    )


def apply_reassign_id(
    state: HistoryState,
    old_id: str,
    persisted: AnnotationRecord,
    sent: Optional[AnnotationRecord] = None,
) -> HistoryState:
    """Swap a temporary id for the persisted record everywhere it appears.

    Occurrences identical to ``sent`` become ``persisted``; occurrences edited
    locally since then keep their edits and only take the new id.
    """
    def rewrite(snapshot: Snapshot) -> Snapshot:
        out = []
        for record in snapshot:
            if record.id != old_id:
                out.append(record)
            elif sent is None or record == sent:
                out.append(persisted)
            else:
                out.append(
                    record.model_copy(
                        update={
                            "id": persisted.id,
                            "created_at": persisted.created_at,
                            "updated_at": persisted.updated_at,
                        }
                    )
                )
        return tuple(out)

    return _map_snapshots(state, rewrite)


def apply_discard(state: HistoryState, annotation_id: str) -> HistoryState:
    """Forget a record that never reached the server, including its history."""
    return _map_snapshots(
        state,
        lambda snapshot: tuple(r for r in snapshot if r.id != annotation_id),
    )


def apply_put(state: HistoryState, record: AnnotationRecord) -> HistoryState:
    idx = _index_of(state.live, record.id)
    if idx is None:
        return state
    return replace(state, live=state.live[:idx] + (record,) + state.live[idx + 1:])


def apply_insert(state: HistoryState, record: AnnotationRecord, index: int) -> HistoryState:
    if _index_of(state.live, record.id) is not None:
        return state
    index = max(0, min(index, len(state.live)))
    return replace(state, live=state.live[:index] + (record,) + state.live[index:])


class AnnotationStore:
    """Owner of the live annotation set and its history.

    Constructed when a view mounts and closed when it unmounts; consumers get
    the instance passed to them.
    """

    def __init__(self, records: Iterable[AnnotationRecord] = ()):
        self._state = apply_replace_all(HistoryState(), records)
        self._listeners: List[Listener] = []
        self.closed = False

    @property
    def state(self) -> HistoryState:
        return self._state

    @property
    def annotations(self) -> Snapshot:
        return self._state.live

    @property
    def can_undo(self) -> bool:
        return bool(self._state.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self._state.redo_stack)

    def get(self, annotation_id: str) -> Optional[AnnotationRecord]:
        idx = _index_of(self._state.live, annotation_id)
        return None if idx is None else self._state.live[idx]

    def index_of(self, annotation_id: str) -> Optional[int]:
        return _index_of(self._state.live, annotation_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, state: HistoryState) -> HistoryState:
        if self.closed:
            logger.warning("Ignoring mutation of a closed annotation store")
            return self._state
        if state is self._state:
            return state
        self._state = state
        for listener in list(self._listeners):
            listener(state)
        return state

    def create(self, record: AnnotationRecord) -> HistoryState:
        return self._set(apply_create(self._state, record))

    def update(self, annotation_id: str, patch: Dict[str, Any]) -> HistoryState:
        return self._set(apply_update(self._state, annotation_id, patch))

    def delete(self, annotation_id: str) -> HistoryState:
        return self._set(apply_delete(self._state, annotation_id))

    def replace_all(self, records: Iterable[AnnotationRecord]) -> HistoryState:
        return self._set(apply_replace_all(self._state, records))

    def undo(self) -> HistoryState:
        return self._set(apply_undo(self._state))

    def redo(self) -> HistoryState:
        return self._set(apply_redo(self._state))

    def restore(self, state: HistoryState) -> HistoryState:
        return self._set(state)

    def reassign_id(
        self,
        old_id: str,
        persisted: AnnotationRecord,
        sent: Optional[AnnotationRecord] = None,
    ) -> HistoryState:
        return self._set(apply_reassign_id(self._state, old_id, persisted, sent))

    def discard(self, annotation_id: str) -> HistoryState:
        return self._set(apply_discard(self._state, annotation_id))

    def put(self, record: AnnotationRecord) -> HistoryState:
        return self._set(apply_put(self._state, record))

    def insert(self, record: AnnotationRecord, index: int) -> HistoryState:
        return self._set(apply_insert(self._state, record, index))

    def close(self) -> None:
        self._listeners.clear()
        self.closed = True
