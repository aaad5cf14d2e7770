"""
Typed configuration models matching the YAML config structure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Union


@dataclass
class DetectionConfig:
    """Detection engine configuration."""
    model_path: str = "assets/model.onnx"
    labels_path: str = "assets/labels.txt"
    conf_threshold: float = 0.25
    iou_threshold: float = 0.4
    num_threads: int = 4
    min_free_memory_mb: int = 50
    min_free_memory_after_oom_mb: int = 80
    max_consecutive_oom_errors: int = 3
    batch_timeout_s: float = 15.0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DetectionConfig":
        return cls(
            model_path=d.get("model_path", "assets/model.onnx"),
            labels_path=d.get("labels_path", "assets/labels.txt"),
            conf_threshold=float(d.get("conf_threshold", 0.25)),
            iou_threshold=float(d.get("iou_threshold", 0.4)),
            num_threads=int(d.get("num_threads", 4)),
            min_free_memory_mb=int(d.get("min_free_memory_mb", 50)),
            min_free_memory_after_oom_mb=int(d.get("min_free_memory_after_oom_mb", 80)),
            max_consecutive_oom_errors=int(d.get("max_consecutive_oom_errors", 3)),
            batch_timeout_s=float(d.get("batch_timeout_s", 15.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_path": self.model_path,
            "labels_path": self.labels_path,
            "conf_threshold": self.conf_threshold,
            "iou_threshold": self.iou_threshold,
            "num_threads": self.num_threads,
            "min_free_memory_mb": self.min_free_memory_mb,
            "min_free_memory_after_oom_mb": self.min_free_memory_after_oom_mb,
            "max_consecutive_oom_errors": self.max_consecutive_oom_errors,
            "batch_timeout_s": self.batch_timeout_s,
        }


@dataclass
class RecoveryConfig:
    """Crash recovery configuration."""
    state_path: str = "data/crash_recovery.json"
    max_crashes_per_session: int = 3
    crash_reset_interval_s: float = 24 * 60 * 60
    memory_check_interval_ms: int = 1000
    high_memory_ratio: float = 0.8
    critical_memory_ratio: float = 0.9

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RecoveryConfig":
        return cls(
            state_path=d.get("state_path", "data/crash_recovery.json"),
            max_crashes_per_session=int(d.get("max_crashes_per_session", 3)),
            crash_reset_interval_s=float(d.get("crash_reset_interval_s", 24 * 60 * 60)),
            memory_check_interval_ms=int(d.get("memory_check_interval_ms", 1000)),
            high_memory_ratio=float(d.get("high_memory_ratio", 0.8)),
            critical_memory_ratio=float(d.get("critical_memory_ratio", 0.9)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state_path": self.state_path,
            "max_crashes_per_session": self.max_crashes_per_session,
            "crash_reset_interval_s": self.crash_reset_interval_s,
            "memory_check_interval_ms": self.memory_check_interval_ms,
            "high_memory_ratio": self.high_memory_ratio,
            "critical_memory_ratio": self.critical_memory_ratio,
        }


@dataclass
class StorageConfig:
    """Storage configuration."""
    local_database_path: str = "data/medication_detections.sqlite"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StorageConfig":
        return cls(
            local_database_path=d.get("local_database_path", "data/medication_detections.sqlite"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_database_path": self.local_database_path,
        }


@dataclass
class CameraConfig:
    """Live camera configuration (index or stream URL)."""
    device_id: Union[int, str] = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CameraConfig":
        return cls(device_id=d.get("device_id", 0))

    def to_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id}


@dataclass
class Config:
    """
    Complete application configuration.

    This is a typed representation of the YAML config structure.
    """
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    log_path: str = "logs/medication_detector.log"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Config":
        """Adapter: Create Config from raw dictionary (e.g., from load_config)."""
        return cls(
            detection=DetectionConfig.from_dict(d.get("detection", {}) or {}),
            recovery=RecoveryConfig.from_dict(d.get("recovery", {}) or {}),
            storage=StorageConfig.from_dict(d.get("storage", {}) or {}),
            camera=CameraConfig.from_dict(d.get("camera", {}) or {}),
            log_path=d.get("log_path", "logs/medication_detector.log"),
            log_level=d.get("log_level", "INFO"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert back to dictionary (for saving or passing to existing code)."""
        return {
            "detection": self.detection.to_dict(),
            "recovery": self.recovery.to_dict(),
            "storage": self.storage.to_dict(),
            "camera": self.camera.to_dict(),
            "log_path": self.log_path,
            "log_level": self.log_level,
        }
