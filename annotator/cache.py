from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from backend.app.models import AnnotationRecord

logger = logging.getLogger(__name__)

CACHE_PATH = os.getenv(
    "ANNOTATOR_CACHE_PATH",
    str(Path.home() / ".cache" / "video-annotator" / "annotations.json"),
)

_records_adapter = TypeAdapter(List[AnnotationRecord])


class SnapshotCache:
    """Last annotation set known to be persisted, kept on local disk."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or CACHE_PATH)

    def load(self, video: Optional[str] = None) -> Optional[List[AnnotationRecord]]:
        """Cached records, optionally of one video. None when there is no usable cache."""
        if not self.path.exists():
            return None
        try:
            records = _records_adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable annotation cache %s: %s", self.path, e)
            return None
        if video is None:
            return records
        return [record for record in records if record.video == video]

    def save(self, records: Sequence[AnnotationRecord], video: Optional[str] = None) -> None:
        """Replace the cached records, or only those of ``video`` when given."""
        records = list(records)
        if video is not None:
            others = [record for record in self.load() or [] if record.video != video]
            records = others + records
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = _records_adapter.dump_python(records, mode="json", by_alias=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2))
            tmp_path.replace(self.path)
        except OSError as e:
            logger.warning("Could not write annotation cache %s: %s", self.path, e)
