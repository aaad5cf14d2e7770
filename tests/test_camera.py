"""
Tests for camera mode error reporting and restart.
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from conftest import FakeRunner
from main import MAX_READ_FAILURES, run_camera
from models.config import Config
from overlay.renderer import OverlayRenderer
from recovery.crash_manager import KEY_CAMERA_ERROR_COUNT
from runtime.context import RuntimeContext

FAILED_READ = (False, None)


@pytest.fixture
def ctx(make_engine, recovery, default_output):
    runner = FakeRunner(default_output)
    return RuntimeContext(
        config=Config(),
        recovery=recovery,
        engine=make_engine(runner),
        overlay=OverlayRenderer(),
    )


def make_camera(reads, opened=True):
    camera = MagicMock()
    camera.isOpened.return_value = opened
    camera.read.side_effect = reads
    return camera


class TestRunCamera:
    """Tests for run_camera()."""

    def test_open_failure_records_camera_error(self, ctx):
        camera = make_camera([], opened=False)

        with patch("main.cv2.VideoCapture", return_value=camera):
            assert run_camera(ctx, 0, display=False) == 1

        assert ctx.recovery.get_session_stats().camera_errors == 1
        assert ctx.recovery.persisted_counts()[KEY_CAMERA_ERROR_COUNT] == 1
        camera.release.assert_called_once()

    def test_repeated_read_failures_record_camera_error(self, ctx):
        camera = make_camera([FAILED_READ] * MAX_READ_FAILURES + [KeyboardInterrupt()])

        with patch("main.cv2.VideoCapture", return_value=camera) as capture, \
                patch("main.time.sleep"):
            assert run_camera(ctx, 0, display=False) == 0

        assert ctx.recovery.get_session_stats().camera_errors == 1
        assert capture.call_count == 1

    def test_good_frame_resets_failure_count(self, ctx):
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        reads = (
            [FAILED_READ] * (MAX_READ_FAILURES - 1)
            + [(True, frame)]
            + [FAILED_READ] * (MAX_READ_FAILURES - 1)
            + [KeyboardInterrupt()]
        )
        camera = make_camera(reads)

        with patch("main.cv2.VideoCapture", return_value=camera), patch("main.time.sleep"):
            assert run_camera(ctx, 0, display=False) == 0

        assert ctx.recovery.get_session_stats().camera_errors == 0

    def test_restarts_camera_after_repeated_errors(self, ctx):
        camera = make_camera([FAILED_READ] * (2 * MAX_READ_FAILURES) + [KeyboardInterrupt()])

        with patch("main.cv2.VideoCapture", return_value=camera) as capture, \
                patch("main.time.sleep"):
            assert run_camera(ctx, 0, display=False) == 0

        assert ctx.recovery.get_session_stats().camera_errors == 2
        assert capture.call_count == 2

    def test_failed_restart_stops_camera_mode(self, ctx):
        camera = make_camera([FAILED_READ] * (2 * MAX_READ_FAILURES))
        dead = make_camera([], opened=False)

        with patch("main.cv2.VideoCapture", side_effect=[camera, dead]), \
                patch("main.time.sleep"):
            assert run_camera(ctx, 0, display=False) == 1

        assert ctx.recovery.get_session_stats().camera_errors == 3
        assert ctx.recovery.is_in_recovery_mode()
