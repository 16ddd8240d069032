from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_DURATION = 3.0
DEFAULT_COLOR = "#FF5722"
DEFAULT_VIDEO = "default"


"""
Shape vocabulary
"""
class AnnotationType(str, Enum):
    circle = "circle"
    rectangle = "rectangle"
    line = "line"
    text = "text"


GEOMETRY_FIELDS: Dict[AnnotationType, tuple] = {
    AnnotationType.circle: ("x", "y", "radius"),
    AnnotationType.rectangle: ("x", "y", "width", "height"),
    AnnotationType.line: ("points",),
    AnnotationType.text: ("x", "y", "text"),
}
ALL_GEOMETRY_FIELDS = ("x", "y", "radius", "width", "height", "points", "text")


class Point2D(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float


"""
Annotations, normalized to the rendered video box
"""
class AnnotationBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    type: AnnotationType
    x: Optional[float] = None
    y: Optional[float] = None
    radius: Optional[float] = Field(default=None, ge=0)
    width: Optional[float] = Field(default=None, ge=0)
    height: Optional[float] = Field(default=None, ge=0)
    points: Optional[List[Point2D]] = None
    text: Optional[str] = None
    timestamp: float = Field(ge=0)
    duration: float = Field(default=DEFAULT_DURATION, gt=0)
    color: str = DEFAULT_COLOR
    video: str = DEFAULT_VIDEO

    @model_validator(mode="after")
    def check_geometry(self):
        required = GEOMETRY_FIELDS[self.type]
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(
                f"{self.type.value} annotation requires {', '.join(missing)}"
            )
        extra = [
            name
            for name in ALL_GEOMETRY_FIELDS
            if name not in required and getattr(self, name) is not None
        ]
        if extra:
            raise ValueError(
                f"{self.type.value} annotation does not take {', '.join(extra)}"
            )
        if self.type == AnnotationType.line and len(self.points) != 2:
            raise ValueError("line annotation requires exactly two points")
        return self

    def geometry(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in GEOMETRY_FIELDS[self.type]}


class AnnotationCreate(AnnotationBase):
    pass


class AnnotationRecord(AnnotationBase):
    id: str
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    def to_create(self) -> AnnotationCreate:
        return AnnotationCreate.model_validate(
            self.model_dump(exclude={"id", "created_at", "updated_at"})
        )


class AnnotationUpdate(BaseModel):
    """Partial update; only the fields that were sent are applied."""

    model_config = ConfigDict(extra="ignore")

    type: Optional[AnnotationType] = None
    x: Optional[float] = None
    y: Optional[float] = None
    radius: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    points: Optional[List[Point2D]] = None
    text: Optional[str] = None
    timestamp: Optional[float] = None
    duration: Optional[float] = None
    color: Optional[str] = None
    video: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def merge_record(record: AnnotationRecord, patch: Dict[str, Any]) -> AnnotationRecord:
    """Apply a patch and re-validate. ``id`` and bookkeeping are not patchable."""
    data = record.model_dump()
    for key, value in patch.items():
        if key in ("id", "_id", "created_at", "createdAt", "updated_at", "updatedAt"):
            continue
        data[key] = value
    if "type" in patch:
        # geometry of the previous type does not carry over to a new type
        for name in ALL_GEOMETRY_FIELDS:
            if name not in GEOMETRY_FIELDS[AnnotationType(data["type"])]:
                data[name] = None
    return AnnotationRecord.model_validate(data)


"""
Video and transport payloads
"""
class VideoConfig(BaseModel):
    src: str


class ErrorBody(BaseModel):
    message: str
    errors: Optional[List[Dict[str, Any]]] = None


class AnnotationEventType(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


class AnnotationEvent(BaseModel):
    event: AnnotationEventType
    id: str
    annotation: Optional[AnnotationRecord] = None
    timestamp: datetime
