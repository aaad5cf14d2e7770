"""
Smoke tests for typed models.
"""

import math

import pytest

from models.detection import (
    UNKNOWN,
    UNKNOWN_CLASS_NAME,
    BoundingBox,
    ClassLabels,
    Detections,
    EmptyDetection,
    EmptyReason,
    is_valid_geometry,
)
from models.recovery import SessionStats
from models.session import DetectedItem, DetectionSession


class TestBoundingBox:
    def test_from_center(self):
        bbox = BoundingBox.from_center(0.5, 0.5, 0.25, 0.5, 0.9, 1, "ibuprofen")

        assert bbox.as_tuple() == (0.375, 0.25, 0.625, 0.75)
        assert bbox.width == 0.25
        assert bbox.height == 0.5
        assert bbox.area == 0.125
        assert not bbox.is_unknown

    @pytest.mark.parametrize("coords", [
        (0.5, 0.1, 0.4, 0.2),    # x2 < x1
        (0.1, 0.1, 0.1, 0.2),    # zero width
        (-0.1, 0.1, 0.4, 0.2),   # x1 < 0
        (0.1, 0.1, 0.4, 1.2),    # y2 > 1
        (math.nan, 0.1, 0.4, 0.2),
    ])
    def test_invalid_geometry_rejected(self, coords):
        x1, y1, x2, y2 = coords

        assert not is_valid_geometry(x1, y1, x2, y2)
        with pytest.raises(ValueError):
            BoundingBox(x1=x1, y1=y1, x2=x2, y2=y2, cx=0.3, cy=0.15, w=0.3, h=0.1, confidence=0.5)

    def test_negative_class_index_rejected(self):
        with pytest.raises(ValueError):
            BoundingBox.from_center(0.5, 0.5, 0.25, 0.25, 0.9, class_index=-1)

    def test_immutable(self):
        bbox = BoundingBox.from_center(0.5, 0.5, 0.25, 0.25, 0.9)

        with pytest.raises(AttributeError):
            bbox.x1 = 0.0

    def test_unknown_by_default(self):
        bbox = BoundingBox.from_center(0.5, 0.5, 0.25, 0.25, 0.9)

        assert bbox.is_unknown
        assert bbox.class_name == UNKNOWN_CLASS_NAME

    def test_dict_round_trip(self):
        bbox = BoundingBox.from_center(0.5, 0.5, 0.25, 0.25, 0.9, 0, "aspirin")

        assert BoundingBox.from_dict(bbox.to_dict()) == bbox


class TestClassLabels:
    def test_from_lines_trims_and_skips_blanks(self):
        labels = ClassLabels.from_lines(["  aspirin\n", "\n", "   ", "ibuprofen\r\n"])

        assert list(labels) == ["aspirin", "ibuprofen"]
        assert len(labels) == 2

    def test_lookup(self):
        labels = ClassLabels(["aspirin"])

        assert labels.lookup(0) == "aspirin"
        assert labels.lookup(1) is UNKNOWN
        assert labels.lookup(-1) is UNKNOWN
        assert labels.name_for(5) == UNKNOWN_CLASS_NAME

    def test_unknown_is_falsy_singleton(self):
        assert not UNKNOWN
        assert str(UNKNOWN) == "unknown"
        assert type(UNKNOWN)() is UNKNOWN


class TestDetectionResult:
    def test_empty(self):
        result = EmptyDetection()

        assert result.is_empty
        assert result.boxes == ()
        assert result.reason == EmptyReason.NO_DETECTIONS

    def test_detections_require_boxes(self):
        with pytest.raises(ValueError):
            Detections(boxes=())

    def test_detections(self):
        bbox = BoundingBox.from_center(0.5, 0.5, 0.25, 0.25, 0.9)

        result = Detections(boxes=(bbox,), elapsed_ms=7)

        assert not result.is_empty
        assert result.boxes == (bbox,)


class TestSessionModels:
    def test_session_to_dict(self):
        session = DetectionSession(id=1, image_id="img", timestamp_ms=1000, total_items=2, processing_time_ms=5)

        assert session.to_dict()["image_id"] == "img"
        assert session.to_dict()["total_items"] == 2

    def test_item_to_dict(self):
        item = DetectedItem(id=3, session_id=1, class_name="aspirin", confidence=0.9,
                            x1=0.1, y1=0.1, x2=0.2, y2=0.2, class_index=0)

        assert item.to_dict()["class_name"] == "aspirin"

    def test_session_stats_to_dict(self):
        stats = SessionStats(crashes=1, oom_errors=0, camera_errors=1, is_recovery_mode=False)

        assert stats.to_dict() == {
            "crashes": 1,
            "oom_errors": 0,
            "camera_errors": 1,
            "is_recovery_mode": False,
        }
