"""
Crash recovery: failure counters, memory pressure and degradation advice.
"""

from .crash_manager import CrashRecoveryManager, system_memory_probe
from .preferences import PreferenceStore

__all__ = ["CrashRecoveryManager", "PreferenceStore", "system_memory_probe"]
