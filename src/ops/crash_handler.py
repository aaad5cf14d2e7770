"""
Process-wide crash reporting.

Uncaught exceptions on the main thread and on worker threads are recorded as
GENERAL crashes before the previously installed hook runs, so the crash
history survives a process that is about to die.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Callable

from models.recovery import CrashType
from recovery.crash_manager import CrashRecoveryManager


def _record(recovery: CrashRecoveryManager, exc_type, exc_value, thread_name: str) -> None:
    name = getattr(exc_type, "__name__", str(exc_type))
    logging.critical(f"Uncaught {name} in thread {thread_name}: {exc_value}")
    recovery.record_crash(CrashType.GENERAL, f"{name}: {exc_value}")


def install_crash_handler(recovery: CrashRecoveryManager) -> Callable[[], None]:
    """
    Hook sys.excepthook and threading.excepthook.

    KeyboardInterrupt is passed through without being recorded. Returns a
    function that restores the previous hooks.
    """
    previous_excepthook = sys.excepthook
    previous_thread_hook = threading.excepthook

    def excepthook(exc_type, exc_value, exc_tb):
        if not issubclass(exc_type, KeyboardInterrupt):
            _record(recovery, exc_type, exc_value, threading.current_thread().name)
        previous_excepthook(exc_type, exc_value, exc_tb)

    def thread_excepthook(args):
        if args.exc_type is not SystemExit:
            thread_name = args.thread.name if args.thread is not None else "unknown"
            _record(recovery, args.exc_type, args.exc_value, thread_name)
        previous_thread_hook(args)

    sys.excepthook = excepthook
    threading.excepthook = thread_excepthook
    logging.debug("Crash handler installed")

    def uninstall() -> None:
        sys.excepthook = previous_excepthook
        threading.excepthook = previous_thread_hook

    return uninstall
