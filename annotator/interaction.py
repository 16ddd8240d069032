from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.app.models import (
    DEFAULT_COLOR,
    DEFAULT_DURATION,
    DEFAULT_VIDEO,
    AnnotationRecord,
    AnnotationType,
    Point2D,
)

from .hit_test import FONT_SIZE_PIXELS, PADDING_PIXELS, HitTester
from .history import AnnotationStore
from .normalizer import UNMEASURED, BoxSize, delta_to_relative, to_relative
from .shapes import MIN_SHAPE_PIXELS, Draft, text_create, translate_geometry
from .sync import SyncAdapter
from .timeline import WindowPolicy, visible_annotations

logger = logging.getLogger(__name__)


class Tool(str, Enum):
    select = "select"
    circle = "circle"
    rectangle = "rectangle"
    line = "line"
    text = "text"


class Mode(str, Enum):
    idle = "idle"
    drawing = "drawing"
    selected = "selected"
    dragging = "dragging"
    text_entry = "text_entry"


SHAPE_TOOLS = {
    Tool.circle: AnnotationType.circle,
    Tool.rectangle: AnnotationType.rectangle,
    Tool.line: AnnotationType.line,
}


@dataclass(frozen=True)
class RenderFrame:
    current_time: float
    box: BoxSize
    annotations: Tuple[AnnotationRecord, ...]
    draft: Optional[AnnotationRecord] = None
    selected_id: Optional[str] = None


@dataclass
class DragOrigin:
    pointer: Point2D
    record: AnnotationRecord


@dataclass
class TextEntry:
    anchor: Point2D
    value: str = ""


Renderer = Callable[[RenderFrame], None]


class InteractionController:
    """Pointer/keyboard state machine over one store, repainting per video time.

    Pointer coordinates are pixels relative to the top-left corner of the
    rendered video box.
    """

    def __init__(
        self,
        store: AnnotationStore,
        sync: SyncAdapter,
        box: BoxSize = UNMEASURED,
        renderer: Optional[Renderer] = None,
        on_toggle_playback: Optional[Callable[[], None]] = None,
        policy: WindowPolicy = WindowPolicy.full,
        default_duration: float = DEFAULT_DURATION,
        default_color: str = DEFAULT_COLOR,
        video: str = DEFAULT_VIDEO,
        min_shape_px: float = MIN_SHAPE_PIXELS,
        padding_px: float = PADDING_PIXELS,
        font_size_px: float = FONT_SIZE_PIXELS,
    ):
        self.store = store
        self.sync = sync
        self.box = box
        self.renderers: List[Renderer] = [renderer] if renderer else []
        self.on_toggle_playback = on_toggle_playback
        self.policy = policy
        self.default_duration = default_duration
        self.default_color = default_color
        self.video = video
        self.min_shape_px = min_shape_px
        self.padding_px = padding_px
        self.font_size_px = font_size_px

        self.tool: Optional[Tool] = None
        self.mode = Mode.idle
        self.current_time = 0.0
        self.playing = False
        self.selected_id: Optional[str] = None
        self.draft: Optional[Draft] = None
        self.drag: Optional[DragOrigin] = None
        self.drag_preview: Optional[AnnotationRecord] = None
        self.text_entry: Optional[TextEntry] = None
        self.last_frame: Optional[RenderFrame] = None

        self._unsubscribe = store.subscribe(lambda _state: self.redraw())

    """
    Video and layout events
    """
    def on_time_update(self, current_time: float) -> RenderFrame:
        self.current_time = max(0.0, current_time)
        return self.redraw()

    def set_box_size(self, width: float, height: float) -> RenderFrame:
        self.box = BoxSize(float(width), float(height))
        return self.redraw()

    def set_playing(self, playing: bool) -> None:
        self.playing = bool(playing)
        if self.playing and self.mode == Mode.drawing:
            self._cancel_draft()

    def set_tool(self, tool: Optional[Tool]) -> None:
        self.tool = tool
        self.selected_id = None
        self.draft = None
        self.drag = None
        self.drag_preview = None
        self.text_entry = None
        self.mode = Mode.idle
        self.redraw()

    """
    Pointer events
    """
    def pointer_down(self, x: float, y: float) -> None:
        pixel = Point2D(x=x, y=y)
        if not self.box.is_measured:
            logger.debug("Ignoring pointer-down before the video box is measured")
            return
        point = to_relative(pixel, self.box)

        if self.mode == Mode.text_entry:
            self._finish_text(commit=True)
            return

        if self.tool == Tool.text:
            if self.playing:
                return
            self.text_entry = TextEntry(anchor=point)
            self.mode = Mode.text_entry
            return

        if self.tool in SHAPE_TOOLS:
            if self.playing:
                return
            self.selected_id = None
            self.draft = Draft.begin(SHAPE_TOOLS[self.tool], point)
            self.mode = Mode.drawing
            self.redraw()
            return

        hit = self._hit_tester().find_hit(
            point,
            self.store.annotations,
            self.current_time,
            selected_id=self._resolve_selected(),
            policy=self.policy,
        )
        if hit is None:
            self.selected_id = None
            self.mode = Mode.idle
            if self.tool is None and self.on_toggle_playback is not None:
                self.on_toggle_playback()
            self.redraw()
            return

        if self.mode == Mode.selected and hit.id == self._resolve_selected():
            self.drag = DragOrigin(pointer=pixel, record=hit)
            self.drag_preview = hit
            self.mode = Mode.dragging
            return

        self.selected_id = hit.id
        self.mode = Mode.selected
        self.redraw()

    def pointer_move(self, x: float, y: float) -> None:
        if self.mode == Mode.drawing and self.draft is not None:
            self.draft = self.draft.extend(to_relative(Point2D(x=x, y=y), self.box))
            self.redraw()
        elif self.mode == Mode.dragging and self.drag is not None:
            self.drag_preview = self._dragged(x, y)
            self.redraw()

    def pointer_up(self, x: float, y: float) -> Optional[asyncio.Task]:
        if self.mode == Mode.drawing and self.draft is not None:
            draft = self.draft.extend(to_relative(Point2D(x=x, y=y), self.box))
            self.draft = None
            self.mode = Mode.idle
            if draft.is_degenerate(self.box, self.min_shape_px):
                logger.debug("Discarding %s smaller than %spx", draft.type.value, self.min_shape_px)
                self.redraw()
                return None
            self.tool = None
            return self.sync.create(
                draft.to_create(
                    self.current_time,
                    duration=self.default_duration,
                    color=self.default_color,
                    video=self.video,
                )
            )

        if self.mode == Mode.dragging and self.drag is not None:
            moved = self._dragged(x, y)
            origin = self.drag.record
            self.drag = None
            self.drag_preview = None
            self.mode = Mode.selected
            if moved.geometry() == origin.geometry():
                self.redraw()
                return None
            patch = {
                name: value
                for name, value in moved.geometry().items()
                if name in ("x", "y", "points")
            }
            return self.sync.update(moved.id, patch)
        return None

    """
    Text entry
    """
    def text_input(self, value: str) -> None:
        if self.text_entry is not None:
            self.text_entry.value = value

    def key_down(
        self, key: str, ctrl: bool = False, shift: bool = False
    ) -> Optional[asyncio.Task]:
        """Keyboard input. ``ctrl`` stands for either Ctrl or Cmd.

        While text is being entered only Enter and Escape are handled; the
        rest goes to the text field.
        """
        if self.mode == Mode.text_entry:
            if key == "Enter":
                return self._finish_text(commit=True)
            if key == "Escape":
                return self._finish_text(commit=False)
            return None

        name = key.lower()
        if ctrl and name == "z":
            if shift:
                self.redo()
            else:
                self.undo()
        elif ctrl and name == "y":
            self.redo()
        elif key in ("Delete", "Backspace"):
            return self.delete_selected()
        elif key in (" ", "Space"):
            if self.on_toggle_playback is not None:
                self.on_toggle_playback()
        return None

    def blur(self) -> Optional[asyncio.Task]:
        if self.mode == Mode.text_entry:
            return self._finish_text(commit=True)
        return None

    def _finish_text(self, commit: bool) -> Optional[asyncio.Task]:
        entry = self.text_entry
        self.text_entry = None
        self.mode = Mode.idle
        if not commit or entry is None:
            return None
        annotation = text_create(
            entry.anchor,
            entry.value,
            self.current_time,
            duration=self.default_duration,
            color=self.default_color,
            video=self.video,
        )
        if annotation is None:
            return None
        self.tool = None
        return self.sync.create(annotation)

    """
    Editing commands
    """
    def select(self, annotation_id: Optional[str]) -> Optional[AnnotationRecord]:
        """Select a record by id, as from the annotation list. Drops the active tool."""
        self.tool = None
        self.draft = None
        self.drag = None
        self.drag_preview = None
        self.text_entry = None
        record = None
        if annotation_id is not None:
            local_id = annotation_id
            if self.store.get(local_id) is None:
                local_id = self.sync.canonical_id(annotation_id)
            record = self.store.get(local_id)
        self.selected_id = record.id if record is not None else None
        self.mode = Mode.selected if record is not None else Mode.idle
        self.redraw()
        return record

    def selected_record(self) -> Optional[AnnotationRecord]:
        selected_id = self._resolve_selected()
        return self.store.get(selected_id) if selected_id else None

    def update_selected(self, patch: Dict[str, Any]) -> Optional[asyncio.Task]:
        selected_id = self._resolve_selected()
        if selected_id is None or self.store.get(selected_id) is None:
            return None
        return self.sync.update(selected_id, patch)

    def delete_selected(self) -> Optional[asyncio.Task]:
        selected_id = self._resolve_selected()
        self.selected_id = None
        self.mode = Mode.idle
        if selected_id is None or self.store.get(selected_id) is None:
            return None
        return self.sync.delete(selected_id)

    def undo(self) -> None:
        self._clear_selection()
        self.store.undo()

    def redo(self) -> None:
        self._clear_selection()
        self.store.redo()

    """
    Rendering
    """
    def add_renderer(self, renderer: Renderer) -> None:
        self.renderers.append(renderer)

    def frame(self) -> RenderFrame:
        self._resolve_drag()
        selected_id = self._resolve_selected()
        annotations = visible_annotations(
            self.store.annotations,
            self.current_time,
            policy=self.policy,
            selected_id=selected_id,
        )
        if self.drag_preview is not None:
            annotations = [
                self.drag_preview if record.id == self.drag_preview.id else record
                for record in annotations
            ]
        draft = (
            self.draft.preview(self.current_time, self.default_color)
            if self.draft is not None
            else None
        )
        return RenderFrame(
            current_time=self.current_time,
            box=self.box,
            annotations=tuple(annotations),
            draft=draft,
            selected_id=selected_id,
        )

    def redraw(self) -> RenderFrame:
        frame = self.frame()
        self.last_frame = frame
        for renderer in self.renderers:
            renderer(frame)
        return frame

    def close(self) -> None:
        self._unsubscribe()
        self.renderers.clear()

    def _hit_tester(self) -> HitTester:
        return HitTester(self.box, self.padding_px, self.font_size_px)

    def _resolve_selected(self) -> Optional[str]:
        if self.selected_id is None:
            return None
        if self.store.get(self.selected_id) is not None:
            return self.selected_id
        canonical = self.sync.canonical_id(self.selected_id)
        if self.store.get(canonical) is not None:
            self.selected_id = canonical
            return canonical
        return None

    def _dragged(self, x: float, y: float) -> AnnotationRecord:
        origin = self.drag
        dx, dy = delta_to_relative(x - origin.pointer.x, y - origin.pointer.y, self.box)
        update = translate_geometry(origin.record, dx, dy)
        # the create may have settled since the drag started
        update["id"] = self.sync.canonical_id(origin.record.id)
        return origin.record.model_copy(update=update)

    def _resolve_drag(self) -> None:
        if self.drag is None:
            return
        canonical = self.sync.canonical_id(self.drag.record.id)
        if canonical != self.drag.record.id:
            self.drag.record = self.drag.record.model_copy(update={"id": canonical})
            if self.drag_preview is not None:
                self.drag_preview = self.drag_preview.model_copy(update={"id": canonical})

    def _cancel_draft(self) -> None:
        self.draft = None
        self.mode = Mode.idle
        self.redraw()

    def _clear_selection(self) -> None:
        self.selected_id = None
        self.drag = None
        self.drag_preview = None
        if self.mode in (Mode.selected, Mode.dragging):
            self.mode = Mode.idle
