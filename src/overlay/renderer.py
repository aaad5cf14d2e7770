"""
Detection overlay.

The displayed image fills its view with a center-crop: it is scaled uniformly
by max(view/source) on both axes and centered, so the overflowing axis is cut
off at both ends. Normalized box corners are mapped through the same
transform, clamped to the view and dropped when nothing drawable is left.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from models.detection import BoundingBox, is_valid_geometry

# Colors (BGR)
COLOR_BOX = (0, 255, 0)
COLOR_TEXT = (255, 255, 255)


@dataclass(frozen=True)
class ViewRect:
    """A box mapped into view pixels."""
    left: float
    top: float
    right: float
    bottom: float
    label: str
    confidence: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def label_text(self) -> str:
        return f"{self.label} {int(self.confidence * 100)}%"


class OverlayRenderer:
    """
    Holds the latest detections and turns them into view rectangles.

    Results and sizes may arrive from different threads; the renderer keeps
    a pending flag when asked to draw before both the view and the source
    image have a size, and draws on the next call once they do.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._boxes: List[BoundingBox] = []
        self._source_width = 0
        self._source_height = 0
        self._view_width = 0
        self._view_height = 0
        self.pending_redraw = False

    def set_results(self, boxes: Sequence[BoundingBox]) -> None:
        """Replace the current detections with a copy of the valid ones."""
        valid = [
            box for box in (boxes or [])
            if isinstance(box, BoundingBox) and is_valid_geometry(box.x1, box.y1, box.x2, box.y2)
        ]
        dropped = len(boxes or []) - len(valid)
        if dropped:
            logging.debug(f"Overlay ignored {dropped} invalid boxes")
        with self._lock:
            self._boxes = valid
            self.pending_redraw = True

    def clear(self) -> None:
        with self._lock:
            self._boxes = []
            self.pending_redraw = True

    def set_image_source_info(self, width: int, height: int) -> bool:
        """Record the decoded image size. Non-positive sizes are rejected."""
        if width <= 0 or height <= 0:
            logging.warning(f"Invalid image dimensions: {width}x{height}")
            return False
        with self._lock:
            self._source_width = int(width)
            self._source_height = int(height)
            self.pending_redraw = True
        return True

    def set_view_size(self, width: int, height: int) -> None:
        with self._lock:
            self._view_width = max(0, int(width))
            self._view_height = max(0, int(height))
            self.pending_redraw = True

    @property
    def boxes(self) -> List[BoundingBox]:
        with self._lock:
            return list(self._boxes)

    def is_ready(self) -> bool:
        with self._lock:
            return self._ready_locked()

    def _ready_locked(self) -> bool:
        return (
            self._view_width > 0 and self._view_height > 0
            and self._source_width > 0 and self._source_height > 0
        )

    def compute_view_rects(self) -> List[ViewRect]:
        """
        Map the current boxes to view pixels.

        Returns an empty list and keeps pending_redraw set when the view or
        the source image has no size yet.
        """
        with self._lock:
            if not self._ready_locked():
                self.pending_redraw = True
                return []

            boxes = list(self._boxes)
            sw, sh = self._source_width, self._source_height
            vw, vh = self._view_width, self._view_height
            self.pending_redraw = False

        scale = max(vw / sw, vh / sh)
        offset_x = (vw - sw * scale) / 2.0
        offset_y = (vh - sh * scale) / 2.0

        rects: List[ViewRect] = []
        for box in boxes:
            left = box.x1 * sw * scale + offset_x
            top = box.y1 * sh * scale + offset_y
            right = box.x2 * sw * scale + offset_x
            bottom = box.y2 * sh * scale + offset_y

            # fully outside the view
            if right <= 0 or bottom <= 0 or left >= vw or top >= vh:
                continue

            left = min(max(left, 0.0), float(vw))
            top = min(max(top, 0.0), float(vh))
            right = min(max(right, 0.0), float(vw))
            bottom = min(max(bottom, 0.0), float(vh))

            if right <= left or bottom <= top:
                continue

            rects.append(ViewRect(left, top, right, bottom, box.class_name, box.confidence))
        return rects

    def draw(self, canvas: np.ndarray) -> Optional[List[ViewRect]]:
        """
        Draw boxes and "name NN%" labels onto canvas in place.

        The canvas size is taken as the view size. Returns the drawn rects,
        or None when drawing was deferred.
        """
        if canvas is None or canvas.ndim < 2:
            return None
        self.set_view_size(canvas.shape[1], canvas.shape[0])
        if not self.is_ready():
            logging.debug("Overlay draw deferred until sizes are known")
            return None

        rects = self.compute_view_rects()

        font = cv2.FONT_HERSHEY_SIMPLEX
        font_scale = 0.5
        thickness = 1
        for rect in rects:
            x1, y1, x2, y2 = int(rect.left), int(rect.top), int(rect.right), int(rect.bottom)
            cv2.rectangle(canvas, (x1, y1), (x2, y2), COLOR_BOX, 2)

            label = rect.label_text()
            (text_w, text_h), _ = cv2.getTextSize(label, font, font_scale, thickness)
            # keep the label inside the canvas for boxes touching the top edge
            label_bottom = y1 if y1 - text_h - 6 >= 0 else y1 + text_h + 6
            cv2.rectangle(canvas, (x1, label_bottom - text_h - 6), (x1 + text_w + 4, label_bottom), COLOR_BOX, -1)
            cv2.putText(canvas, label, (x1 + 2, label_bottom - 4), font, font_scale, COLOR_TEXT, thickness)

        return rects
