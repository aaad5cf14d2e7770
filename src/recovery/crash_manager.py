"""
Crash recovery manager.

Tracks crash, out-of-memory and camera-error counters across sessions,
classifies memory pressure and recommends degradation actions. The manager is
an ordinary object owned by the composition root and passed to the detection
engine and services that need it.

Every public method logs and returns a safe default on internal errors; this
component must never itself be the source of a crash.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

import psutil

from models.config import RecoveryConfig
from models.recovery import CrashType, MemoryStatus, RecoveryAction, SessionStats
from recovery.preferences import PreferenceStore

KEY_CRASH_COUNT = "crash_count"
KEY_OOM_COUNT = "oom_count"
KEY_CAMERA_ERROR_COUNT = "camera_error_count"
KEY_LAST_CRASH_TIME = "last_crash_time"

MemoryProbe = Callable[[], Tuple[int, int]]


def system_memory_probe() -> Tuple[int, int]:
    """Return (used_bytes, max_bytes) for the host."""
    vm = psutil.virtual_memory()
    return vm.total - vm.available, vm.total


class AtomicCounter:
    """Integer counter safe for concurrent increments."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value


class CrashRecoveryManager:
    """
    Central arbiter of whether detection work should proceed, degrade or skip.

    Persisted counters (crash/OOM/camera-error, last crash time) live in a
    PreferenceStore. Session counters reset with the process.
    """

    def __init__(
        self,
        preferences: Optional[PreferenceStore] = None,
        config: Optional[RecoveryConfig] = None,
        memory_probe: Optional[MemoryProbe] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        gc_collect: Callable[[], int] = gc.collect,
    ):
        self.config = config or RecoveryConfig()
        self.preferences = preferences if preferences is not None else PreferenceStore(None)
        self._memory_probe = memory_probe or system_memory_probe
        self._clock = clock
        self._monotonic = monotonic
        self._gc_collect = gc_collect

        self._session_crashes = AtomicCounter()
        self._session_oom = AtomicCounter()
        self._session_camera_errors = AtomicCounter()

        self._state_lock = threading.Lock()
        self._recovery_mode = False
        self._last_memory_check_ms: Optional[float] = None

    def initialize(self) -> None:
        """Load persisted counters, reset them if stale, derive recovery mode."""
        try:
            self.preferences.load()
            now_ms = self._clock() * 1000
            last_crash_ms = self.preferences.get_int(KEY_LAST_CRASH_TIME, 0)
            if now_ms - last_crash_ms > self.config.crash_reset_interval_s * 1000:
                self.reset_crash_counters()

            total_crashes = self.preferences.get_int(KEY_CRASH_COUNT, 0)
            with self._state_lock:
                self._recovery_mode = total_crashes >= self.config.max_crashes_per_session

            if self._recovery_mode:
                logging.warning(f"Starting in recovery mode due to {total_crashes} previous crashes")
            logging.debug(f"CrashRecoveryManager initialized. Recovery mode: {self._recovery_mode}")
        except Exception as e:
            logging.error(f"Error initializing CrashRecoveryManager: {e}")

    def record_crash(self, kind: CrashType, details: str = "") -> None:
        """Record one crash of the given kind. Safe from any thread."""
        try:
            session_crashes = self._session_crashes.increment()

            if kind == CrashType.OUT_OF_MEMORY:
                self._session_oom.increment()
                key = KEY_OOM_COUNT
            elif kind == CrashType.CAMERA_ERROR:
                self._session_camera_errors.increment()
                key = KEY_CAMERA_ERROR_COUNT
            else:
                key = KEY_CRASH_COUNT

            self.preferences.increment(key, **{KEY_LAST_CRASH_TIME: int(self._clock() * 1000)})
            logging.warning(f"Recorded crash: {kind.value} - {details}")

            if session_crashes >= self.config.max_crashes_per_session:
                self._enable_recovery_mode()
        except Exception as e:
            logging.error(f"Error recording crash: {e}")

    def check_memory_pressure(self) -> MemoryStatus:
        """
        Classify current memory usage.

        Sampling is rate-limited; calls inside the interval return NORMAL.
        """
        try:
            now_ms = self._monotonic() * 1000
            with self._state_lock:
                last = self._last_memory_check_ms
                if last is not None and now_ms - last < self.config.memory_check_interval_ms:
                    return MemoryStatus.NORMAL
                self._last_memory_check_ms = now_ms

            used, maximum = self._memory_probe()
            if maximum <= 0:
                return MemoryStatus.NORMAL
            return self.classify_memory(used / maximum)
        except Exception as e:
            logging.error(f"Error checking memory pressure: {e}")
            return MemoryStatus.NORMAL

    def classify_memory(self, usage_ratio: float) -> MemoryStatus:
        if usage_ratio > self.config.critical_memory_ratio:
            logging.warning(f"Critical memory pressure: {int(usage_ratio * 100)}%")
            return MemoryStatus.CRITICAL
        if usage_ratio > self.config.high_memory_ratio:
            logging.warning(f"High memory pressure: {int(usage_ratio * 100)}%")
            return MemoryStatus.HIGH
        return MemoryStatus.NORMAL

    def available_memory_bytes(self) -> Optional[int]:
        """Free memory according to the probe, or None if it cannot be read."""
        try:
            used, maximum = self._memory_probe()
            return maximum - used
        except Exception as e:
            logging.error(f"Error reading available memory: {e}")
            return None

    def get_recovery_recommendations(
        self, memory_status: Optional[MemoryStatus] = None
    ) -> List[RecoveryAction]:
        """Ordered, de-duplicated actions for the current failure history."""
        actions: List[RecoveryAction] = []
        try:
            if memory_status is None:
                memory_status = self.check_memory_pressure()

            if memory_status == MemoryStatus.CRITICAL:
                actions += [
                    RecoveryAction.FORCE_GC,
                    RecoveryAction.REDUCE_RESOLUTION,
                    RecoveryAction.SKIP_ML_PROCESSING,
                ]
            elif memory_status == MemoryStatus.HIGH:
                actions += [RecoveryAction.FORCE_GC, RecoveryAction.REDUCE_FRAME_RATE]

            if self._session_oom.get() > 2:
                actions += [RecoveryAction.REDUCE_RESOLUTION, RecoveryAction.SKIP_ML_PROCESSING]

            if self._session_camera_errors.get() > 1:
                actions.append(RecoveryAction.RESTART_CAMERA)

            if self.is_in_recovery_mode():
                actions.append(RecoveryAction.SAFE_MODE)
        except Exception as e:
            logging.error(f"Error getting recovery recommendations: {e}")

        return list(dict.fromkeys(actions))

    def perform_recovery_action(self, action: RecoveryAction) -> bool:
        try:
            if action == RecoveryAction.FORCE_GC:
                collected = self._gc_collect()
                logging.debug(f"Performed garbage collection ({collected} objects)")
            else:
                logging.debug(f"Recommendation: {action.value}")
            return True
        except Exception as e:
            logging.error(f"Error performing recovery action {action}: {e}")
            return False

    def is_in_recovery_mode(self) -> bool:
        with self._state_lock:
            return self._recovery_mode

    def reset_recovery_mode(self) -> None:
        """Leave recovery mode without touching counters (manual detections)."""
        with self._state_lock:
            was_active = self._recovery_mode
            self._recovery_mode = False
        if was_active:
            logging.info("Recovery mode reset")

    def reset_crash_counters(self) -> None:
        try:
            self.preferences.put(**{
                KEY_CRASH_COUNT: 0,
                KEY_OOM_COUNT: 0,
                KEY_CAMERA_ERROR_COUNT: 0,
                KEY_LAST_CRASH_TIME: 0,
            })
            logging.debug("Reset crash counters")
        except Exception as e:
            logging.error(f"Error resetting crash counters: {e}")

    def get_session_stats(self) -> SessionStats:
        return SessionStats(
            crashes=self._session_crashes.get(),
            oom_errors=self._session_oom.get(),
            camera_errors=self._session_camera_errors.get(),
            is_recovery_mode=self.is_in_recovery_mode(),
        )

    def persisted_counts(self) -> dict:
        return {
            KEY_CRASH_COUNT: self.preferences.get_int(KEY_CRASH_COUNT, 0),
            KEY_OOM_COUNT: self.preferences.get_int(KEY_OOM_COUNT, 0),
            KEY_CAMERA_ERROR_COUNT: self.preferences.get_int(KEY_CAMERA_ERROR_COUNT, 0),
            KEY_LAST_CRASH_TIME: self.preferences.get_int(KEY_LAST_CRASH_TIME, 0),
        }

    def _enable_recovery_mode(self) -> None:
        with self._state_lock:
            already = self._recovery_mode
            self._recovery_mode = True
        if not already:
            logging.warning("Recovery mode enabled due to excessive crashes")
