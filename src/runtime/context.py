from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from detection.engine import DetectionEngine
from models.config import Config
from overlay.renderer import OverlayRenderer
from recovery.crash_manager import CrashRecoveryManager
from storage.database import DetectionStore


@dataclass
class RuntimeContext:
    """Holds runtime state and service references; avoids global singletons."""

    config: Config
    recovery: CrashRecoveryManager
    engine: DetectionEngine
    store: Optional[DetectionStore] = None
    overlay: Optional[OverlayRenderer] = None

    # Observability
    system_stats: dict = field(default_factory=dict)

    def update_stats(self, **values) -> None:
        self.system_stats.update(values)

    def get_system_stats_copy(self) -> dict:
        stats = dict(self.system_stats)
        stats["engine"] = self.engine.stats()
        stats["recovery"] = self.recovery.get_session_stats().to_dict()
        return stats

    def close(self) -> None:
        self.engine.clear()
        if self.store is not None:
            self.store.close()
