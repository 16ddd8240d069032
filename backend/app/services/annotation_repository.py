from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from ..models import AnnotationCreate, AnnotationRecord, merge_record

logger = logging.getLogger(__name__)

_records_adapter = TypeAdapter(List[AnnotationRecord])


class AnnotationNotFound(KeyError):
    pass


class AnnotationRepository:
    """Document store for annotation records.

    Records live in memory in insertion order. With a ``path`` every change is
    written through to a JSON file, which is read back on startup.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._records: Dict[str, AnnotationRecord] = {}
        self._lock = threading.Lock()
        if self.path is not None:
            self._load()

    def list(self, video: Optional[str] = None) -> List[AnnotationRecord]:
        with self._lock:
            records = [
                record
                for record in self._records.values()
                if video is None or record.video == video
            ]
        return sorted(records, key=lambda record: record.timestamp)

    def create(self, annotation: AnnotationCreate) -> AnnotationRecord:
        now = self._now()
        record = AnnotationRecord.model_validate(
            {
                **annotation.model_dump(),
                "id": uuid4().hex,
                "created_at": now,
                "updated_at": now,
            }
        )
        with self._lock:
            self._records[record.id] = record
            self._flush()
        return record

    def update(self, annotation_id: str, patch: Dict[str, Any]) -> AnnotationRecord:
        """Merge ``patch`` into a record. Raises ValueError when the result is invalid."""
        with self._lock:
            current = self._records.get(annotation_id)
            if current is None:
                raise AnnotationNotFound(annotation_id)
            updated = merge_record(current, patch).model_copy(
                update={"updated_at": self._now()}
            )
            self._records[annotation_id] = updated
            self._flush()
        return updated

    def delete(self, annotation_id: str) -> AnnotationRecord:
        with self._lock:
            record = self._records.pop(annotation_id, None)
            if record is None:
                raise AnnotationNotFound(annotation_id)
            self._flush()
        return record

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            records = _records_adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.error("Could not read annotations from %s: %s", self.path, e)
            return
        self._records = {record.id: record for record in records}
        logger.info("Loaded %d annotations from %s", len(self._records), self.path)

    def _flush(self) -> None:
        if self.path is None:
            return
        payload = _records_adapter.dump_python(
            list(self._records.values()), mode="json", by_alias=True
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2))
        tmp_path.replace(self.path)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)
