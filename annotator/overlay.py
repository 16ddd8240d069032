import cv2
import numpy as np
from typing import Iterable, Optional, Tuple

from backend.app.models import AnnotationRecord, AnnotationType, Point2D

from .hit_test import FONT_SIZE_PIXELS, GLYPH_WIDTH_RATIO, LINE_HEIGHT_RATIO
from .interaction import RenderFrame
from .normalizer import BoxSize, to_pixel

FALLBACK_COLOR = (34, 87, 255)  # BGR for #FF5722
SELECTION_COLOR = (255, 191, 0)  # deepskyblue
DRAFT_COLOR = (255, 255, 255)


def _image_box(image: np.ndarray) -> BoxSize:
    height, width = image.shape[:2]
    return BoxSize(width, height)


def _pixel(x: float, y: float, box: BoxSize) -> Tuple[int, int]:
    point = to_pixel(Point2D(x=x, y=y), box)
    return int(point.x), int(point.y)


class OverlayRenderer:
    """Rasterizes render frames onto video frames with OpenCV."""

    def __init__(self, thickness: int = 2, font_size_px: float = FONT_SIZE_PIXELS):
        """
        Initialize the overlay renderer.

        Args:
            thickness: Stroke width in pixels
            font_size_px: Pixel font size that text annotations are laid out with
        """
        self.thickness = thickness
        self.font_size_px = font_size_px
        # Hershey fonts are ~22px tall at scale 1.0
        self.font_scale = font_size_px / 22.0
        self.last_canvas: Optional[np.ndarray] = None

    def blank_canvas(self, box: BoxSize) -> np.ndarray:
        """Transparent BGRA canvas the size of the video box."""
        height = max(1, int(round(box.height)))
        width = max(1, int(round(box.width)))
        return np.zeros((height, width, 4), dtype=np.uint8)

    def __call__(self, frame: RenderFrame) -> None:
        """Renderer hook for the interaction loop: repaint a fresh overlay."""
        if not frame.box.is_measured:
            return
        self.last_canvas = self.draw_frame(self.blank_canvas(frame.box), frame)

    def draw_frame(self, image: np.ndarray, frame: RenderFrame) -> np.ndarray:
        """
        Draw every annotation of a render frame, the draft and the selection.

        Args:
            image: BGR or BGRA image the size of the video box
            frame: RenderFrame from the interaction loop

        Returns:
            Image with the overlay drawn
        """
        output = self.draw_annotations(image, frame.annotations)
        if frame.draft is not None:
            output = self.draw_annotations(output, [frame.draft], color=DRAFT_COLOR)
        if frame.selected_id is not None:
            selected = next(
                (a for a in frame.annotations if a.id == frame.selected_id), None
            )
            if selected is not None:
                output = self.draw_selection(output, selected)
        return output

    def draw_annotations(
        self,
        image: np.ndarray,
        annotations: Iterable[AnnotationRecord],
        color: Optional[Tuple[int, int, int]] = None,
    ) -> np.ndarray:
        """
        Draw annotation geometries on the image.

        Args:
            image: Input image
            annotations: Annotation records in render order
            color: Optional BGR override for every annotation

        Returns:
            Image with annotations drawn
        """
        output = image.copy()
        box = _image_box(output)
        for annotation in annotations:
            bgr = color or self.annotation_color(annotation.color)
            stroke = self._stroke(output, bgr)
            if annotation.type == AnnotationType.rectangle:
                top_left = _pixel(annotation.x, annotation.y, box)
                bottom_right = _pixel(
                    annotation.x + annotation.width, annotation.y + annotation.height, box
                )
                cv2.rectangle(output, top_left, bottom_right, stroke, self.thickness)
            elif annotation.type == AnnotationType.circle:
                # round in normalized space, so an ellipse on a non-square box
                center = _pixel(annotation.x, annotation.y, box)
                rx, ry = _pixel(annotation.radius, annotation.radius, box)
                axes = (max(0, rx), max(0, ry))
                cv2.ellipse(output, center, axes, 0, 0, 360, stroke, self.thickness)
            elif annotation.type == AnnotationType.line:
                start, end = annotation.points
                cv2.line(
                    output,
                    _pixel(start.x, start.y, box),
                    _pixel(end.x, end.y, box),
                    stroke,
                    self.thickness,
                )
            elif annotation.type == AnnotationType.text:
                anchor = to_pixel(Point2D(x=annotation.x, y=annotation.y), box)
                baseline = (int(anchor.x), int(anchor.y + self.font_size_px))
                cv2.putText(
                    output,
                    annotation.text,
                    baseline,
                    cv2.FONT_HERSHEY_SIMPLEX,
                    self.font_scale,
                    stroke,
                    1,
                    cv2.LINE_AA,
                )
        return output

    def draw_selection(self, image: np.ndarray, annotation: AnnotationRecord) -> np.ndarray:
        output = image.copy()
        left, top, right, bottom = self.pixel_bounds(annotation, _image_box(output))
        cv2.rectangle(
            output,
            (left - 3, top - 3),
            (right + 3, bottom + 3),
            self._stroke(output, SELECTION_COLOR),
            1,
        )
        return output

    def pixel_bounds(
        self, annotation: AnnotationRecord, box: BoxSize
    ) -> Tuple[int, int, int, int]:
        if annotation.type == AnnotationType.rectangle:
            x0, y0 = annotation.x, annotation.y
            x1, y1 = x0 + annotation.width, y0 + annotation.height
        elif annotation.type == AnnotationType.circle:
            x0, y0 = annotation.x - annotation.radius, annotation.y - annotation.radius
            x1, y1 = annotation.x + annotation.radius, annotation.y + annotation.radius
        elif annotation.type == AnnotationType.line:
            xs = [pt.x for pt in annotation.points]
            ys = [pt.y for pt in annotation.points]
            x0, y0, x1, y1 = min(xs), min(ys), max(xs), max(ys)
        else:
            text_w = len(annotation.text) * self.font_size_px * GLYPH_WIDTH_RATIO
            text_h = self.font_size_px * LINE_HEIGHT_RATIO
            left, top = _pixel(annotation.x, annotation.y, box)
            return left, top, int(left + text_w), int(top + text_h)
        return (*_pixel(x0, y0, box), *_pixel(x1, y1, box))

    def annotation_color(self, raw: Optional[str]) -> Tuple[int, int, int]:
        if not isinstance(raw, str):
            return FALLBACK_COLOR
        value = raw.strip()
        if value.startswith("#"):
            value = value[1:]
        if len(value) != 6:
            return FALLBACK_COLOR
        try:
            r = int(value[0:2], 16)
            g = int(value[2:4], 16)
            b = int(value[4:6], 16)
        except ValueError:
            return FALLBACK_COLOR
        return (b, g, r)

    def _stroke(self, image: np.ndarray, bgr: Tuple[int, int, int]) -> Tuple[int, ...]:
        if image.ndim == 3 and image.shape[2] == 4:
            return (*bgr, 255)
        return bgr
