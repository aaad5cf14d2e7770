"""
Detection engine.

Owns one loaded model and turns images into deduplicated detections. State
transitions (setup/clear/detect bookkeeping) serialize on one engine lock,
inference serializes against clear() on a model lock, and a non-blocking
try-lock allows exactly one detect() in flight: a concurrent call returns an
empty result immediately instead of queueing.

No error escapes detect(): every failure becomes an EmptyDetection whose
reason is visible to logs and tests only.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from detection.errors import AllocationError, InferenceError, InvalidInputError, ModelLoadError
from detection.postprocess import postprocess
from detection.preprocess import (
    LAYOUT_NHWC,
    parse_input_shape,
    parse_output_shape,
    prepare_input,
    validate_image,
)
from inference.backend import ModelRunner, RunnerFactory
from models.config import DetectionConfig
from models.detection import ClassLabels, DetectionResult, Detections, EmptyDetection, EmptyReason
from models.recovery import CrashType, MemoryStatus, RecoveryAction
from recovery.crash_manager import CrashRecoveryManager

DetectionListener = Callable[[DetectionResult], None]

LOW_MEMORY_GC_INTERVAL_S = 5.0


@dataclass(frozen=True)
class _InferencePlan:
    """Snapshot of engine state taken when a detect() passes the guards."""
    runner: ModelRunner
    labels: ClassLabels
    tensor_width: int
    tensor_height: int
    num_channels: int
    num_elements: int
    layout: str
    input_dtype: Any
    confidence_threshold: float
    iou_threshold: float


class DetectionEngine:
    """
    Lifecycle-managed detector.

    Uninitialized -> setup() -> Ready -> detect()* -> clear() -> Uninitialized.
    A failed setup() leaves the engine uninitialized.
    """

    def __init__(
        self,
        runner_factory: RunnerFactory,
        recovery: CrashRecoveryManager,
        listener: Optional[DetectionListener] = None,
        config: Optional[DetectionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        gc_collect: Callable[[], int] = gc.collect,
    ):
        self.config = config or DetectionConfig()
        self.recovery = recovery
        self.listener = listener
        self._runner_factory = runner_factory
        self._clock = clock
        self._gc_collect = gc_collect

        self._lock = threading.RLock()
        self._model_lock = threading.Lock()
        self._in_flight = threading.Lock()

        self._runner: Optional[ModelRunner] = None
        self._labels = ClassLabels()
        self._initialized = False
        self._layout = LAYOUT_NHWC
        self.tensor_width = 0
        self.tensor_height = 0
        self.num_channels = 0
        self.num_elements = 0

        self.confidence_threshold = self.config.conf_threshold
        self.iou_threshold = self.config.iou_threshold

        self.consecutive_oom_errors = 0
        self.total_inferences = 0
        self.failed_inferences = 0
        self._last_gc_time = 0.0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_processing(self) -> bool:
        return self._in_flight.locked()

    @property
    def labels(self) -> List[str]:
        return list(self._labels)

    def setup(self, model_bytes: bytes, label_lines: Sequence[str]) -> bool:
        """
        Load the model and labels. Idempotent.

        Returns True when the engine is ready. Any failure leaves the engine
        uninitialized with partially acquired resources released.
        """
        with self._lock:
            if self._initialized:
                logging.warning("Detector already initialized")
                return True

            runner: Optional[ModelRunner] = None
            try:
                try:
                    runner = self._runner_factory(model_bytes, self.config.num_threads)
                except Exception as e:
                    raise ModelLoadError(f"Error creating model runner: {e}") from e

                tensor_width, tensor_height, layout = parse_input_shape(runner.input_shape)
                num_channels, num_elements = parse_output_shape(runner.output_shape)
                labels = ClassLabels.from_lines(label_lines)
            except Exception as e:
                logging.error(f"Detector setup failed: {e}")
                self._close_runner(runner)
                self._reset_fields()
                return False

            if len(labels) != num_channels - 4:
                logging.warning(
                    f"Loaded {len(labels)} labels for {num_channels - 4} model classes; "
                    f"unmatched classes resolve to 'unknown'"
                )

            self._runner = runner
            self._labels = labels
            self._layout = layout
            self.tensor_width = tensor_width
            self.tensor_height = tensor_height
            self.num_channels = num_channels
            self.num_elements = num_elements
            self.total_inferences = 0
            self.failed_inferences = 0
            self.consecutive_oom_errors = 0
            self._initialized = True

            logging.debug(
                f"Model setup - Input: {list(runner.input_shape)}, Output: {list(runner.output_shape)}"
            )
            logging.info(
                f"Detector ready: tensor {tensor_width}x{tensor_height} ({layout}), "
                f"channels: {num_channels}, elements: {num_elements}, labels: {labels.head()}"
            )
            return True

    def setup_from_files(self, model_path: str, labels_path: str) -> bool:
        """Read the model artifact and label file, then setup()."""
        try:
            with open(model_path, "rb") as f:
                model_bytes = f.read()
        except OSError as e:
            logging.error(f"Error loading model file {model_path}: {e}")
            return False
        try:
            with open(labels_path, "r", encoding="utf-8") as f:
                label_lines = f.readlines()
        except OSError as e:
            logging.error(f"Error loading labels {labels_path}: {e}")
            return False
        return self.setup(model_bytes, label_lines)

    def clear(self) -> None:
        """Release the model and reset all state. Safe to call repeatedly."""
        with self._lock:
            try:
                self._initialized = False
                runner, self._runner = self._runner, None
                if runner is not None:
                    # waits for an in-flight inference to finish
                    with self._model_lock:
                        self._close_runner(runner)
                self._reset_fields()

                if self.total_inferences > 0:
                    success_rate = (self.total_inferences - self.failed_inferences) * 100.0 / self.total_inferences
                    logging.debug(
                        f"Detector cleared. Success rate: {int(success_rate)}% "
                        f"({self.total_inferences} total, {self.failed_inferences} failed)"
                    )
                self.total_inferences = 0
                self.failed_inferences = 0
                self.consecutive_oom_errors = 0

                self._gc_collect()
            except Exception as e:
                logging.error(f"Error clearing detector: {e}")

    def update_thresholds(
        self, confidence: Optional[float] = None, iou: Optional[float] = None
    ) -> None:
        """Change thresholds; they apply from the next detect() call."""
        if confidence is not None:
            if not 0.0 <= confidence <= 1.0:
                raise ValueError(f"confidence threshold must be in [0, 1], got {confidence}")
            self.confidence_threshold = float(confidence)
        if iou is not None:
            if not 0.0 < iou <= 1.0:
                raise ValueError(f"iou threshold must be in (0, 1], got {iou}")
            self.iou_threshold = float(iou)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "initialized": self._initialized,
                "processing": self.is_processing,
                "total_inferences": self.total_inferences,
                "failed_inferences": self.failed_inferences,
                "consecutive_oom_errors": self.consecutive_oom_errors,
                "tensor_width": self.tensor_width,
                "tensor_height": self.tensor_height,
                "num_channels": self.num_channels,
                "num_elements": self.num_elements,
            }

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def detect(self, image: np.ndarray) -> DetectionResult:
        """
        Run detection on one image.

        The result is passed to the listener (if any) and returned.
        """
        reason: Optional[EmptyReason] = None
        with self._lock:
            if not self._initialized:
                reason = EmptyReason.NOT_INITIALIZED
            elif not self._in_flight.acquire(blocking=False):
                reason = EmptyReason.BUSY
        if reason is not None:
            return self._emit(EmptyDetection(reason))

        try:
            result = self._detect_in_flight(image)
        finally:
            self._in_flight.release()
        return self._emit(result)

    def _detect_in_flight(self, image: np.ndarray) -> DetectionResult:
        if self.recovery.is_in_recovery_mode():
            logging.warning("Skipping detection - in recovery mode")
            return EmptyDetection(EmptyReason.RECOVERY_MODE)

        if self.recovery.check_memory_pressure() == MemoryStatus.CRITICAL:
            logging.warning("Skipping detection - critical memory pressure")
            self.recovery.perform_recovery_action(RecoveryAction.FORCE_GC)
            return EmptyDetection(EmptyReason.CRITICAL_MEMORY)

        with self._lock:
            if self.consecutive_oom_errors >= self.config.max_consecutive_oom_errors:
                logging.error("Too many consecutive OOM errors, skipping detection")
                return EmptyDetection(EmptyReason.CIRCUIT_OPEN)
            if not self._initialized or self._runner is None:
                return EmptyDetection(EmptyReason.NOT_INITIALIZED)
            self.total_inferences += 1
            plan = _InferencePlan(
                runner=self._runner,
                labels=self._labels,
                tensor_width=self.tensor_width,
                tensor_height=self.tensor_height,
                num_channels=self.num_channels,
                num_elements=self.num_elements,
                layout=self._layout,
                input_dtype=getattr(self._runner, "input_dtype", np.float32) or np.float32,
                confidence_threshold=self.confidence_threshold,
                iou_threshold=self.iou_threshold,
            )

        started = self._clock()
        scratch: List[np.ndarray] = []
        try:
            validate_image(image)

            if self._is_low_memory():
                return EmptyDetection(EmptyReason.LOW_MEMORY)

            input_tensor = prepare_input(
                image,
                plan.tensor_width,
                plan.tensor_height,
                layout=plan.layout,
                dtype=plan.input_dtype,
                scratch=scratch,
            )

            output = self._run_inference(plan.runner, input_tensor)
            if output is None:
                return EmptyDetection(EmptyReason.NOT_INITIALIZED)
            scratch.append(output)

            try:
                boxes = postprocess(
                    output,
                    plan.num_channels,
                    plan.num_elements,
                    plan.labels,
                    plan.confidence_threshold,
                    plan.iou_threshold,
                )
            except ValueError as e:
                raise InvalidInputError(str(e)) from e

            elapsed_ms = int(round((self._clock() - started) * 1000))
            with self._lock:
                self.consecutive_oom_errors = 0

            if not boxes:
                return EmptyDetection(EmptyReason.NO_DETECTIONS)
            return Detections(boxes=tuple(boxes), elapsed_ms=elapsed_ms)
        except Exception as e:
            return self._handle_failure(e)
        finally:
            scratch.clear()

    def _run_inference(self, runner: ModelRunner, input_tensor: np.ndarray) -> Optional[np.ndarray]:
        with self._model_lock:
            if not self._initialized or self._runner is not runner:
                logging.warning("Detector was cleared during processing")
                return None
            try:
                output = runner.run(input_tensor)
            except MemoryError:
                raise
            except Exception as e:
                raise InferenceError(f"Error running inference: {e}") from e
        if output is None:
            raise InferenceError("Model returned no output")
        return np.asarray(output)

    def _is_low_memory(self) -> bool:
        available = self.recovery.available_memory_bytes()
        if available is None:
            return False
        floor_mb = (
            self.config.min_free_memory_after_oom_mb
            if self.consecutive_oom_errors > 0
            else self.config.min_free_memory_mb
        )
        if available >= floor_mb * 1024 * 1024:
            return False

        logging.warning(f"Low memory ({available // (1024 * 1024)}MB free), skipping detection")
        now = self._clock()
        if now - self._last_gc_time > LOW_MEMORY_GC_INTERVAL_S:
            self._gc_collect()
            self._last_gc_time = now
        return True

    def _handle_failure(self, error: BaseException) -> EmptyDetection:
        """Map a failure to an empty result plus counters and telemetry."""
        if isinstance(error, (MemoryError, AllocationError)):
            with self._lock:
                self.consecutive_oom_errors += 1
                self.failed_inferences += 1
            logging.error(f"Out of memory in detect: {error}")
            self.recovery.record_crash(CrashType.OUT_OF_MEMORY, f"detect: {error}")
            self._gc_collect()
            return EmptyDetection(EmptyReason.ALLOCATION_FAILURE)

        with self._lock:
            self.failed_inferences += 1

        if isinstance(error, InvalidInputError):
            logging.warning(f"Invalid input for detection: {error}")
            return EmptyDetection(EmptyReason.INVALID_INPUT)
        if isinstance(error, InferenceError):
            logging.error(f"{error}")
            return EmptyDetection(EmptyReason.INFERENCE_FAILURE)

        logging.error(f"Unexpected error in detect: {error!r}")
        return EmptyDetection(EmptyReason.ERROR)

    def _emit(self, result: DetectionResult) -> DetectionResult:
        if self.listener is not None:
            try:
                self.listener(result)
            except Exception as e:
                logging.error(f"Detection listener failed: {e}")
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _reset_fields(self) -> None:
        self._initialized = False
        self._runner = None
        self._labels = ClassLabels()
        self._layout = LAYOUT_NHWC
        self.tensor_width = 0
        self.tensor_height = 0
        self.num_channels = 0
        self.num_elements = 0

    @staticmethod
    def _close_runner(runner: Optional[ModelRunner]) -> None:
        if runner is None:
            return
        try:
            runner.close()
        except Exception as e:
            logging.error(f"Error closing model runner: {e}")
