"""
Crash recovery models: crash kinds, memory status and recovery actions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class CrashType(str, Enum):
    OUT_OF_MEMORY = "out_of_memory"
    CAMERA_ERROR = "camera_error"
    GENERAL = "general"


class MemoryStatus(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(str, Enum):
    FORCE_GC = "force_gc"
    REDUCE_RESOLUTION = "reduce_resolution"
    REDUCE_FRAME_RATE = "reduce_frame_rate"
    SKIP_ML_PROCESSING = "skip_ml_processing"
    RESTART_CAMERA = "restart_camera"
    SAFE_MODE = "safe_mode"


@dataclass(frozen=True)
class SessionStats:
    """
    Failure counters for the current process.

    Attributes:
        crashes: All crashes recorded this session.
        oom_errors: Out-of-memory crashes recorded this session.
        camera_errors: Camera errors recorded this session.
        is_recovery_mode: Whether recovery mode is active.
    """
    crashes: int = 0
    oom_errors: int = 0
    camera_errors: int = 0
    is_recovery_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "crashes": self.crashes,
            "oom_errors": self.oom_errors,
            "camera_errors": self.camera_errors,
            "is_recovery_mode": self.is_recovery_mode,
        }
