from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from backend.app.models import AnnotationRecord


class WindowPolicy(str, Enum):
    # visible for the whole [timestamp, timestamp + duration]
    full = "full"
    # cut short at the start of the next later annotation, half-open
    truncate_at_next = "truncate_at_next"


def display_windows(
    annotations: Sequence[AnnotationRecord], policy: WindowPolicy = WindowPolicy.full
) -> Dict[str, Tuple[float, float]]:
    """Map of id -> (start, end) display window."""
    windows = {
        record.id: (record.timestamp, record.timestamp + record.duration)
        for record in annotations
    }
    if policy != WindowPolicy.truncate_at_next:
        return windows

    starts = sorted({record.timestamp for record in annotations})
    for record in annotations:
        start, end = windows[record.id]
        later = next((value for value in starts if value > start), None)
        if later is not None and later < end:
            windows[record.id] = (start, later)
    return windows


def is_visible(
    window: Tuple[float, float], current_time: float, truncated: bool = False
) -> bool:
    start, end = window
    if truncated:
        return start <= current_time < end
    return start <= current_time <= end


def visible_annotations(
    annotations: Sequence[AnnotationRecord],
    current_time: float,
    policy: WindowPolicy = WindowPolicy.full,
    selected_id: Optional[str] = None,
) -> List[AnnotationRecord]:
    """Annotations shown at ``current_time``, in render order.

    The selected annotation is always included so it can be edited outside of
    its window.
    """
    windows = display_windows(annotations, policy)
    visible: List[AnnotationRecord] = []
    for record in annotations:
        start, end = windows[record.id]
        truncated = end < record.timestamp + record.duration
        if record.id == selected_id or is_visible((start, end), current_time, truncated):
            visible.append(record)
    return visible
