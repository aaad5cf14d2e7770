"""
Typed models for the medication detector.

Detections, stored sessions, crash recovery state and configuration.
"""

from .detection import (
    UNKNOWN,
    UNKNOWN_CLASS_NAME,
    BoundingBox,
    ClassLabels,
    DetectionResult,
    Detections,
    EmptyDetection,
    EmptyReason,
    is_valid_geometry,
)
from .session import DetectionSession, DetectedItem
from .recovery import CrashType, MemoryStatus, RecoveryAction, SessionStats
from .config import CameraConfig, Config, DetectionConfig, RecoveryConfig, StorageConfig

__all__ = [
    # Detection
    "UNKNOWN",
    "UNKNOWN_CLASS_NAME",
    "BoundingBox",
    "ClassLabels",
    "DetectionResult",
    "Detections",
    "EmptyDetection",
    "EmptyReason",
    "is_valid_geometry",
    # Storage
    "DetectionSession",
    "DetectedItem",
    # Recovery
    "CrashType",
    "MemoryStatus",
    "RecoveryAction",
    "SessionStats",
    # Config
    "CameraConfig",
    "Config",
    "DetectionConfig",
    "RecoveryConfig",
    "StorageConfig",
]
