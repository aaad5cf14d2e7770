from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from models.detection import BoundingBox, DetectionResult, EmptyDetection, EmptyReason
from models.recovery import CrashType, RecoveryAction
from runtime.context import RuntimeContext


def summarize_counts(boxes: Sequence[BoundingBox]) -> Dict[str, int]:
    """Class name -> count, most frequent first."""
    return dict(Counter(box.class_name for box in boxes).most_common())


class PhotoBatchService:
    """
    One-shot detection over still photos.

    Each photo is a manual, user-initiated detection: recovery mode is reset
    first so a previous crash streak does not block it. Detection runs on a
    worker thread with a wall-clock timeout; expiry counts as an empty result.
    Every outcome, empty ones included, is stored as the session for its
    image id.

    The timeout starts when the photo's detect starts. A detect that timed out
    keeps the worker until it returns; later photos wait for it for up to
    queue_timeout_s (default: QUEUE_TIMEOUT_FACTOR photo timeouts) and are
    skipped as timed out after that.
    """

    QUEUE_TIMEOUT_FACTOR = 4

    def __init__(
        self,
        ctx: RuntimeContext,
        timeout_s: Optional[float] = None,
        queue_timeout_s: Optional[float] = None,
    ):
        self.ctx = ctx
        self.timeout_s = timeout_s if timeout_s is not None else ctx.config.detection.batch_timeout_s
        self.queue_timeout_s = (
            queue_timeout_s if queue_timeout_s is not None
            else self.timeout_s * self.QUEUE_TIMEOUT_FACTOR
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="photo-detect")

    def process_photo(self, image_id: str, image: np.ndarray) -> List[BoundingBox]:
        self.ctx.recovery.reset_recovery_mode()

        started = time.monotonic()
        result = self._detect_with_timeout(image)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if result.is_empty:
            logging.info(f"No medications detected in {image_id} ({result.reason.value})")
        else:
            logging.info(
                f"Detected {len(result.boxes)} items in {image_id} in {result.elapsed_ms}ms: "
                f"{summarize_counts(result.boxes)}"
            )

        if self.ctx.store is not None:
            self.ctx.store.record_result(image_id, result, elapsed_ms)
        return list(result.boxes)

    def process_batch(
        self, items: Iterable[Tuple[str, np.ndarray]]
    ) -> Dict[str, List[BoundingBox]]:
        results: Dict[str, List[BoundingBox]] = {}
        for image_id, image in items:
            try:
                results[image_id] = self.process_photo(image_id, image)
            except Exception as e:
                logging.error(f"Error processing {image_id}: {e}")
                results[image_id] = []
        total = sum(len(boxes) for boxes in results.values())
        logging.info(f"Batch complete: {len(results)} photos, {total} items")
        return results

    def _detect_with_timeout(self, image: np.ndarray) -> DetectionResult:
        started = threading.Event()

        def job() -> DetectionResult:
            started.set()
            return self.ctx.engine.detect(image)

        future = self._executor.submit(job)
        if not started.wait(timeout=self.queue_timeout_s) and future.cancel():
            logging.warning(
                f"Detection worker still busy after {self.queue_timeout_s}s, skipping photo"
            )
            return EmptyDetection(EmptyReason.TIMEOUT)
        try:
            return future.result(timeout=self.timeout_s)
        except FutureTimeoutError:
            logging.warning(f"Detection timed out after {self.timeout_s}s")
            return EmptyDetection(EmptyReason.TIMEOUT)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class FrameIngestService:
    """
    Feeds live frames to the engine from a single background worker.

    A frame that arrives while the previous one is still being detected is
    dropped, so results always follow the newest frames the worker could take.
    Before each frame the recovery manager is consulted: FORCE_GC is carried
    out and SKIP_ML_PROCESSING drops the frame. A failure while handling a
    frame is recorded as a GENERAL crash.
    """

    def __init__(
        self,
        ctx: RuntimeContext,
        on_result: Optional[Callable[[np.ndarray, DetectionResult], None]] = None,
    ):
        self.ctx = ctx
        self.on_result = on_result
        self.frame_idx = 0
        self.frames_dropped = 0
        self.frames_skipped = 0
        self._busy = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="frame-detect")
        self._last_future: Optional[Future] = None

    def submit(self, frame: np.ndarray) -> bool:
        """Queue frame for detection. Returns False when it was dropped or skipped."""
        actions = self.ctx.recovery.get_recovery_recommendations()
        if RecoveryAction.FORCE_GC in actions:
            self.ctx.recovery.perform_recovery_action(RecoveryAction.FORCE_GC)
        if RecoveryAction.SKIP_ML_PROCESSING in actions:
            self.frames_skipped += 1
            return False

        if not self._busy.acquire(blocking=False):
            self.frames_dropped += 1
            return False
        self.frame_idx += 1
        try:
            self._last_future = self._executor.submit(self._run, frame)
        except RuntimeError:
            self._busy.release()
            raise
        return True

    def _run(self, frame: np.ndarray) -> None:
        try:
            self.handle_frame(frame)
        except Exception as e:
            logging.error(f"Frame processing failed: {e}")
            self.ctx.recovery.record_crash(CrashType.GENERAL, f"Frame processing failed: {e}")
        finally:
            self._busy.release()

    def handle_frame(self, frame: np.ndarray) -> DetectionResult:
        result = self.ctx.engine.detect(frame)

        if self.ctx.overlay is not None:
            self.ctx.overlay.set_image_source_info(frame.shape[1], frame.shape[0])
            self.ctx.overlay.set_results(result.boxes)

        self.ctx.update_stats(
            frames_processed=self.frame_idx,
            frames_dropped=self.frames_dropped,
            frames_skipped=self.frames_skipped,
            last_frame_ts=time.time(),
        )

        if self.on_result is not None:
            self.on_result(frame, result)
        return result

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the in-flight frame (if any) is done."""
        future = self._last_future
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
