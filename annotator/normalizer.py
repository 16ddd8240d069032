"""Conversion between pointer pixels and the normalized space of the video box.

Annotations are stored in ``[0, 1]`` units relative to the rendered video box
so they survive resizes and fullscreen toggles. The box size is a live input:
callers pass the current measurement on every call.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from backend.app.models import Point2D

ORIGIN = Point2D(x=0.0, y=0.0)


@dataclass(frozen=True)
class BoxSize:
    width: float
    height: float

    @property
    def is_measured(self) -> bool:
        return self.width > 0 and self.height > 0

    @property
    def min_side(self) -> float:
        return min(self.width, self.height)


UNMEASURED = BoxSize(0.0, 0.0)


def to_relative(pixel_point: Point2D, box: BoxSize) -> Point2D:
    """Pixel -> normalized. Returns the origin when the box is not measured yet."""
    if not box.is_measured:
        return ORIGIN
    return Point2D(x=pixel_point.x / box.width, y=pixel_point.y / box.height)


def to_pixel(relative_point: Point2D, box: BoxSize) -> Point2D:
    return Point2D(x=relative_point.x * box.width, y=relative_point.y * box.height)


def delta_to_relative(dx: float, dy: float, box: BoxSize) -> Tuple[float, float]:
    if not box.is_measured:
        return 0.0, 0.0
    return dx / box.width, dy / box.height
