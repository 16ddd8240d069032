from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from backend.app.models import (
    DEFAULT_COLOR,
    DEFAULT_DURATION,
    DEFAULT_VIDEO,
    AnnotationCreate,
    AnnotationRecord,
    AnnotationType,
    Point2D,
)

from .normalizer import BoxSize

MIN_SHAPE_PIXELS = 5.0
DRAFT_ID = "draft"

DRAWABLE_TYPES = (AnnotationType.circle, AnnotationType.rectangle, AnnotationType.line)


def _distance(a: Point2D, b: Point2D) -> float:
    return math.hypot(b.x - a.x, b.y - a.y)


@dataclass(frozen=True)
class Draft:
    """A shape being drawn: anchored at pointer-down, extended on every move."""

    type: AnnotationType
    anchor: Point2D
    geometry: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def begin(cls, shape_type: AnnotationType, anchor: Point2D) -> "Draft":
        if shape_type not in DRAWABLE_TYPES:
            raise ValueError(f"{shape_type.value} shapes are not drawn by dragging")
        return cls(shape_type, anchor, _geometry_between(shape_type, anchor, anchor))

    def extend(self, current: Point2D) -> "Draft":
        return Draft(self.type, self.anchor, _geometry_between(self.type, self.anchor, current))

    def pixel_extent(self, box: BoxSize) -> float:
        """Largest on-screen size of the draft, in pixels."""
        geometry = self.geometry
        if self.type == AnnotationType.rectangle:
            return max(geometry["width"] * box.width, geometry["height"] * box.height)
        if self.type == AnnotationType.circle:
            return geometry["radius"] * max(box.width, box.height)
        start, end = geometry["points"]
        return math.hypot((end.x - start.x) * box.width, (end.y - start.y) * box.height)

    def is_degenerate(self, box: BoxSize, min_pixels: float = MIN_SHAPE_PIXELS) -> bool:
        if not box.is_measured:
            return True
        return self.pixel_extent(box) < min_pixels

    def to_create(
        self,
        timestamp: float,
        duration: float = DEFAULT_DURATION,
        color: str = DEFAULT_COLOR,
        video: str = DEFAULT_VIDEO,
    ) -> AnnotationCreate:
        return AnnotationCreate(
            type=self.type,
            timestamp=max(0.0, timestamp),
            duration=duration,
            color=color,
            video=video,
            **self.geometry,
        )

    def preview(self, timestamp: float, color: str = DEFAULT_COLOR) -> AnnotationRecord:
        return AnnotationRecord(
            id=DRAFT_ID,
            type=self.type,
            timestamp=max(0.0, timestamp),
            color=color,
            **self.geometry,
        )


def _geometry_between(
    shape_type: AnnotationType, anchor: Point2D, current: Point2D
) -> Dict[str, Any]:
    if shape_type == AnnotationType.rectangle:
        return {
            "x": min(anchor.x, current.x),
            "y": min(anchor.y, current.y),
            "width": abs(current.x - anchor.x),
            "height": abs(current.y - anchor.y),
        }
    if shape_type == AnnotationType.circle:
        return {"x": anchor.x, "y": anchor.y, "radius": _distance(anchor, current)}
    return {"points": [anchor, current]}


def text_geometry(anchor: Point2D, text: str) -> Dict[str, Any]:
    return {"x": anchor.x, "y": anchor.y, "text": text}


def text_create(
    anchor: Point2D,
    text: str,
    timestamp: float,
    duration: float = DEFAULT_DURATION,
    color: str = DEFAULT_COLOR,
    video: str = DEFAULT_VIDEO,
) -> Optional[AnnotationCreate]:
    """Build a text annotation, or None when the content is blank."""
    if not text or not text.strip():
        return None
    return AnnotationCreate(
        type=AnnotationType.text,
        timestamp=max(0.0, timestamp),
        duration=duration,
        color=color,
        video=video,
        **text_geometry(anchor, text),
    )


def translate_geometry(record: AnnotationRecord, dx: float, dy: float) -> Dict[str, Any]:
    """Geometry patch moving ``record`` by a normalized delta."""
    if record.type == AnnotationType.line:
        return {
            "points": [Point2D(x=pt.x + dx, y=pt.y + dy) for pt in record.points]
        }
    return {"x": record.x + dx, "y": record.y + dy}
