"""
Detection models for medication package detection results.

Coordinates are normalized to the [0, 1] range of the source image.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

UNKNOWN_CLASS_NAME = "unknown"


def _in_unit_range(v: float) -> bool:
    return 0.0 <= v <= 1.0


@dataclass(frozen=True)
class BoundingBox:
    """
    A single detection in normalized image coordinates.

    Attributes:
        x1: Left edge (normalized).
        y1: Top edge (normalized).
        x2: Right edge (normalized).
        y2: Bottom edge (normalized).
        cx: Center x as decoded from the model output.
        cy: Center y as decoded from the model output.
        w: Width as decoded from the model output.
        h: Height as decoded from the model output.
        confidence: Best class score for this candidate.
        class_index: Index into the label list, or None when unknown.
        class_name: Resolved label, "unknown" when the index has no label.
    """
    x1: float
    y1: float
    x2: float
    y2: float
    cx: float
    cy: float
    w: float
    h: float
    confidence: float
    class_index: Optional[int] = None
    class_name: str = UNKNOWN_CLASS_NAME

    def __post_init__(self):
        if not is_valid_geometry(self.x1, self.y1, self.x2, self.y2):
            raise ValueError(
                f"Invalid box geometry ({self.x1}, {self.y1}, {self.x2}, {self.y2})"
            )
        if self.class_index is not None and self.class_index < 0:
            raise ValueError(f"class_index must be non-negative, got {self.class_index}")

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        """Area from the decoded size, as used by NMS."""
        return self.w * self.h

    @property
    def is_unknown(self) -> bool:
        return self.class_index is None or self.class_name == UNKNOWN_CLASS_NAME

    def as_tuple(self) -> Tuple[float, float, float, float]:
        """Return as (x1, y1, x2, y2) tuple."""
        return (self.x1, self.y1, self.x2, self.y2)

    @classmethod
    def from_center(
        cls,
        cx: float,
        cy: float,
        w: float,
        h: float,
        confidence: float,
        class_index: Optional[int] = None,
        class_name: str = UNKNOWN_CLASS_NAME,
    ) -> "BoundingBox":
        """Create from center/size, deriving the corners."""
        return cls(
            x1=cx - w / 2,
            y1=cy - h / 2,
            x2=cx + w / 2,
            y2=cy + h / 2,
            cx=cx,
            cy=cy,
            w=w,
            h=h,
            confidence=confidence,
            class_index=class_index,
            class_name=class_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "x1": self.x1,
            "y1": self.y1,
            "x2": self.x2,
            "y2": self.y2,
            "cx": self.cx,
            "cy": self.cy,
            "w": self.w,
            "h": self.h,
            "confidence": self.confidence,
            "class_index": self.class_index,
            "class_name": self.class_name,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BoundingBox":
        x1, y1, x2, y2 = d["x1"], d["y1"], d["x2"], d["y2"]
        return cls(
            x1=x1,
            y1=y1,
            x2=x2,
            y2=y2,
            cx=d.get("cx", (x1 + x2) / 2),
            cy=d.get("cy", (y1 + y2) / 2),
            w=d.get("w", x2 - x1),
            h=d.get("h", y2 - y1),
            confidence=d["confidence"],
            class_index=d.get("class_index"),
            class_name=d.get("class_name", UNKNOWN_CLASS_NAME),
        )


def is_valid_geometry(x1: float, y1: float, x2: float, y2: float) -> bool:
    """True when all corners lie in [0, 1] and the box has positive extent."""
    # NaN fails every comparison, so it is rejected here too
    if not all(_in_unit_range(v) for v in (x1, y1, x2, y2)):
        return False
    return x2 > x1 and y2 > y1


class _Unknown:
    """Sentinel for a class index with no matching label."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __str__(self) -> str:
        return UNKNOWN_CLASS_NAME

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()

ClassLabel = Union[str, _Unknown]


class ClassLabels:
    """Ordered class labels; line order defines the class index."""

    def __init__(self, names: Sequence[str] = ()):
        self._names: List[str] = list(names)

    @classmethod
    def from_lines(cls, lines: Sequence[str]) -> "ClassLabels":
        """Parse label lines: trimmed, blank lines ignored."""
        names = []
        for line in lines:
            name = line.strip()
            if name:
                names.append(name)
        return cls(names)

    def lookup(self, index: int) -> ClassLabel:
        if 0 <= index < len(self._names):
            return self._names[index]
        return UNKNOWN

    def name_for(self, index: int) -> str:
        return str(self.lookup(index))

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self):
        return iter(self._names)

    def clear(self) -> None:
        self._names.clear()

    def head(self, n: int = 5) -> List[str]:
        return self._names[:n]


class EmptyReason(str, Enum):
    """Why a detect() call produced no detections."""
    NO_DETECTIONS = "no_detections"
    NOT_INITIALIZED = "not_initialized"
    BUSY = "busy"
    RECOVERY_MODE = "recovery_mode"
    CRITICAL_MEMORY = "critical_memory"
    CIRCUIT_OPEN = "circuit_open"
    LOW_MEMORY = "low_memory"
    INVALID_INPUT = "invalid_input"
    ALLOCATION_FAILURE = "allocation_failure"
    INFERENCE_FAILURE = "inference_failure"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class EmptyDetection:
    """No detections: nothing survived, or the call was rejected or failed."""
    reason: EmptyReason = EmptyReason.NO_DETECTIONS

    @property
    def is_empty(self) -> bool:
        return True

    @property
    def boxes(self) -> Tuple[BoundingBox, ...]:
        return ()


@dataclass(frozen=True)
class Detections:
    """
    Non-empty, NMS-reduced detections ordered by descending confidence.

    Attributes:
        boxes: Surviving boxes.
        elapsed_ms: Wall-clock milliseconds spent in detect().
    """
    boxes: Tuple[BoundingBox, ...] = field(default_factory=tuple)
    elapsed_ms: int = 0

    def __post_init__(self):
        if not self.boxes:
            raise ValueError("Detections requires at least one box; use EmptyDetection")

    @property
    def is_empty(self) -> bool:
        return False


DetectionResult = Union[EmptyDetection, Detections]
