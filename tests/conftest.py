import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from annotator.api import ResponseError, TransportError
from backend.app.models import (
    AnnotationCreate,
    AnnotationRecord,
    AnnotationType,
    Point2D,
    merge_record,
)

DEFAULT_GEOMETRY = {
    AnnotationType.rectangle: {"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2},
    AnnotationType.circle: {"x": 0.5, "y": 0.5, "radius": 0.1},
    AnnotationType.line: {"points": [Point2D(x=0.1, y=0.1), Point2D(x=0.4, y=0.1)]},
    AnnotationType.text: {"x": 0.1, "y": 0.1, "text": "note"},
}


def build_record(
    annotation_id: str = "a1",
    shape: str = "rectangle",
    timestamp: float = 0.0,
    duration: float = 3.0,
    **fields,
) -> AnnotationRecord:
    kind = AnnotationType(shape)
    data = {**DEFAULT_GEOMETRY[kind], **fields}
    return AnnotationRecord(
        id=annotation_id, type=kind, timestamp=timestamp, duration=duration, **data
    )


def build_create(shape: str = "rectangle", timestamp: float = 0.0, **fields) -> AnnotationCreate:
    return build_record("unused", shape, timestamp, **fields).to_create()


class FakeAnnotationApi:
    """In-memory stand-in for AnnotationApi.

    ``fail`` holds operation names that raise; ``gate`` holds every request
    until it is set.
    """

    def __init__(self, records=()):
        self.server: Dict[str, AnnotationRecord] = {r.id: r for r in records}
        self.calls: List[tuple] = []
        self.fail: Set[str] = set()
        self.next_ids: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self._counter = 0

    async def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        if self.gate is not None:
            await self.gate.wait()
        if operation in self.fail:
            raise TransportError(f"Failed to {operation}: connection refused")

    async def list_annotations(self, video=None):
        await self._enter("list", video)
        return [
            r for r in self.server.values() if video is None or r.video == video
        ]

    async def create_annotation(self, annotation: AnnotationCreate):
        await self._enter("create", annotation)
        self._counter += 1
        new_id = self.next_ids.pop(0) if self.next_ids else f"srv{self._counter}"
        record = AnnotationRecord.model_validate({**annotation.model_dump(), "id": new_id})
        self.server[new_id] = record
        return record

    async def update_annotation(self, annotation_id: str, patch: Dict[str, Any]):
        await self._enter("update", annotation_id, patch)
        if annotation_id not in self.server:
            raise ResponseError("Failed to update: Annotation not found.", status_code=404)
        record = merge_record(self.server[annotation_id], patch)
        self.server[annotation_id] = record
        return record

    async def delete_annotation(self, annotation_id: str):
        await self._enter("delete", annotation_id)
        if self.server.pop(annotation_id, None) is None:
            raise ResponseError("Failed to delete: Annotation not found.", status_code=404)


@pytest.fixture
def fake_api():
    return FakeAnnotationApi()
