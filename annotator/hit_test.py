from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from backend.app.models import AnnotationRecord, AnnotationType, Point2D

from .normalizer import BoxSize
from .timeline import WindowPolicy, visible_annotations

PADDING_PIXELS = 5.0
FONT_SIZE_PIXELS = 16.0
# Text boxes are estimated from character count, not measured.
GLYPH_WIDTH_RATIO = 0.6
LINE_HEIGHT_RATIO = 1.2
REFERENCE_BOX = BoxSize(1280.0, 720.0)


@dataclass(frozen=True)
class TextMetrics:
    char_width: float
    line_height: float

    @classmethod
    def for_box(cls, box: BoxSize, font_size: float = FONT_SIZE_PIXELS) -> "TextMetrics":
        if not box.is_measured:
            box = REFERENCE_BOX
        return cls(
            char_width=font_size * GLYPH_WIDTH_RATIO / box.width,
            line_height=font_size * LINE_HEIGHT_RATIO / box.height,
        )

    def box_size(self, text: str) -> tuple:
        return len(text) * self.char_width, self.line_height


DEFAULT_TEXT_METRICS = TextMetrics.for_box(REFERENCE_BOX)


def _in_box(point: Point2D, x: float, y: float, width: float, height: float, padding: float) -> bool:
    return (
        x - padding <= point.x <= x + width + padding
        and y - padding <= point.y <= y + height + padding
    )


def segment_distance(point: Point2D, start: Point2D, end: Point2D) -> float:
    dx = end.x - start.x
    dy = end.y - start.y
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return math.hypot(point.x - start.x, point.y - start.y)
    t = ((point.x - start.x) * dx + (point.y - start.y) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(point.x - (start.x + t * dx), point.y - (start.y + t * dy))


def hit_test(
    point: Point2D,
    annotation: AnnotationRecord,
    padding: float = 0.0,
    text_metrics: TextMetrics = DEFAULT_TEXT_METRICS,
) -> bool:
    """Whether ``point`` (normalized) selects ``annotation``."""
    padding = max(0.0, padding)
    if annotation.type == AnnotationType.rectangle:
        return _in_box(
            point, annotation.x, annotation.y, annotation.width, annotation.height, padding
        )
    if annotation.type == AnnotationType.text:
        width, height = text_metrics.box_size(annotation.text)
        return _in_box(point, annotation.x, annotation.y, width, height, padding)
    if annotation.type == AnnotationType.circle:
        distance = math.hypot(point.x - annotation.x, point.y - annotation.y)
        return distance <= annotation.radius + padding
    if annotation.type == AnnotationType.line:
        start, end = annotation.points
        return segment_distance(point, start, end) <= padding
    return False


class HitTester:
    """Hit-testing with pixel tolerances converted for the current box."""

    def __init__(
        self,
        box: BoxSize,
        padding_px: float = PADDING_PIXELS,
        font_size_px: float = FONT_SIZE_PIXELS,
    ):
        self.box = box
        self.padding = padding_px / box.min_side if box.is_measured else 0.0
        self.text_metrics = TextMetrics.for_box(box, font_size_px)

    def hits(self, point: Point2D, annotation: AnnotationRecord) -> bool:
        return hit_test(point, annotation, self.padding, self.text_metrics)

    def find_hit(
        self,
        point: Point2D,
        annotations: Sequence[AnnotationRecord],
        current_time: float,
        selected_id: Optional[str] = None,
        policy: WindowPolicy = WindowPolicy.full,
    ) -> Optional[AnnotationRecord]:
        """Topmost eligible annotation under ``point``, or None."""
        candidates = visible_annotations(
            annotations, current_time, policy=policy, selected_id=selected_id
        )
        for annotation in reversed(candidates):
            if self.hits(point, annotation):
                return annotation
        return None
