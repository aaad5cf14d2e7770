"""
Pytest configuration and shared fixtures.
"""

import os
import sys
import threading

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from models.config import DetectionConfig, RecoveryConfig  # noqa: E402
from recovery.crash_manager import CrashRecoveryManager  # noqa: E402
from recovery.preferences import PreferenceStore  # noqa: E402

GB = 1024 * 1024 * 1024
MB = 1024 * 1024


def make_output(candidates, num_classes=2, num_elements=None):
    """
    Build a [1, 4 + num_classes, E] output buffer.

    candidates: list of (cx, cy, w, h, scores) where scores is a list of
    per-class scores. Unused elements are zero.
    """
    num_elements = num_elements or max(len(candidates), 1)
    out = np.zeros((1, 4 + num_classes, num_elements), dtype=np.float32)
    for e, (cx, cy, w, h, scores) in enumerate(candidates):
        out[0, 0, e] = cx
        out[0, 1, e] = cy
        out[0, 2, e] = w
        out[0, 3, e] = h
        for c, score in enumerate(scores):
            out[0, 4 + c, e] = score
    return out


class FakeRunner:
    """
    Stand-in model runner.

    Returns a fixed output, can block until released (to keep a detect() in
    flight) and can raise a queued sequence of errors.
    """

    def __init__(self, output, input_shape=(1, 640, 640, 3), output_shape=None):
        self.output = output
        self.input_shape = input_shape
        self.output_shape = output_shape or tuple(np.asarray(output).shape)
        self.input_dtype = np.float32
        self.calls = 0
        self.closed = False
        self.errors = []
        self.started = threading.Event()
        self.release = threading.Event()
        self.release.set()
        self.last_input = None

    def run(self, input_tensor):
        self.calls += 1
        self.last_input = input_tensor
        self.started.set()
        self.release.wait(timeout=5)
        if self.errors:
            raise self.errors.pop(0)
        return self.output

    def close(self):
        self.closed = True


def plenty_of_memory():
    return 1 * GB, 8 * GB


@pytest.fixture
def default_output():
    """One class-1 candidate scoring 0.9 in a 6-channel output."""
    return make_output([(0.5, 0.5, 0.25, 0.25, [0.1, 0.9])])


@pytest.fixture
def recovery():
    manager = CrashRecoveryManager(
        preferences=PreferenceStore(None),
        config=RecoveryConfig(),
        memory_probe=plenty_of_memory,
        gc_collect=lambda: 0,
    )
    manager.initialize()
    return manager


@pytest.fixture
def detection_config():
    return DetectionConfig(model_path="unused.onnx", labels_path="unused.txt")


@pytest.fixture
def make_engine(recovery, detection_config):
    """Factory: make_engine(runner, labels=..., listener=...) -> (engine, runner)."""
    from detection.engine import DetectionEngine

    def factory(runner, labels=("aspirin", "ibuprofen"), listener=None, recovery_manager=None, config=None):
        engine = DetectionEngine(
            lambda model_bytes, num_threads: runner,
            recovery_manager or recovery,
            listener=listener,
            config=config or detection_config,
            gc_collect=lambda: 0,
        )
        assert engine.setup(b"model", list(labels))
        return engine

    return factory


@pytest.fixture
def image():
    return np.full((480, 640, 3), 127, dtype=np.uint8)


@pytest.fixture
def temp_db(tmp_path):
    """Path to a temporary database file."""
    (tmp_path / "data").mkdir(exist_ok=True)
    return str(tmp_path / "data" / "detections.sqlite")


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary config directory with default.yaml."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    default_yaml = config_dir / "default.yaml"
    default_yaml.write_text("""
detection:
  model_path: "assets/model.onnx"
  labels_path: "assets/labels.txt"
  conf_threshold: 0.25
  iou_threshold: 0.4

recovery:
  state_path: "data/crash_recovery.json"

storage:
  local_database_path: "data/test.sqlite"

log_path: "logs/test.log"
log_level: "INFO"
""")

    return config_dir


@pytest.fixture
def valid_config():
    """Return a valid configuration dictionary."""
    return {
        "camera": {"device_id": 0},
        "detection": {
            "model_path": "assets/model.onnx",
            "labels_path": "assets/labels.txt",
            "conf_threshold": 0.25,
            "iou_threshold": 0.4,
            "num_threads": 2,
            "batch_timeout_s": 15.0,
        },
        "recovery": {
            "state_path": "data/crash_recovery.json",
            "max_crashes_per_session": 3,
        },
        "storage": {
            "local_database_path": "data/test.sqlite",
        },
        "log_path": "logs/test.log",
        "log_level": "INFO",
    }
