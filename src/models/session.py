"""
Stored detection session models.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DetectionSession:
    """
    One detection run over one image.

    Attributes:
        id: Row ID in the sessions table.
        image_id: Identifier of the source image (path or URI).
        timestamp_ms: Epoch milliseconds when the session was saved.
        total_items: Number of detected items.
        processing_time_ms: Time spent detecting, when known.
    """
    id: int
    image_id: str
    timestamp_ms: int
    total_items: int
    processing_time_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image_id": self.image_id,
            "timestamp_ms": self.timestamp_ms,
            "total_items": self.total_items,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass(frozen=True)
class DetectedItem:
    """A single stored detection belonging to a session."""
    id: int
    session_id: int
    class_name: str
    confidence: float
    x1: float
    y1: float
    x2: float
    y2: float
    class_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "class_index": self.class_index,
            "class_name": self.class_name,
            "confidence": self.confidence,
            "x1": self.x1,
            "y1": self.y1,
            "x2": self.x2,
            "y2": self.y2,
        }
