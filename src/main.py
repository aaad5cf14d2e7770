"""
Medication detector.

Runs the detection engine over photos (storing one session per photo) or over
a live camera stream, and lists stored detection history.

Usage:
    python src/main.py --config config/config.yaml detect photos/*.jpg --output out/
    python src/main.py camera --display
    python src/main.py history

Arguments:
    --config: Path to configuration file
    detect: Detect medications in image files or directories
    camera: Run live detection on a camera
    history: List stored detection sessions
"""

import os
import sys
import argparse
import logging
import time
import yaml
import cv2
from typing import Dict, Any, List, Tuple, Optional

# Import local modules
from detection.engine import DetectionEngine
from inference.onnx_backend import create_onnx_runner
from models.config import Config
from models.recovery import CrashType, RecoveryAction
from overlay.renderer import OverlayRenderer
from recovery.crash_manager import CrashRecoveryManager
from recovery.preferences import PreferenceStore
from storage.database import DetectionStore
from ops.logging import setup_logging
from ops.crash_handler import install_crash_handler

from runtime.context import RuntimeContext
from runtime.services import FrameIngestService, PhotoBatchService, summarize_counts

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp")

# Consecutive failed reads reported as one camera error
MAX_READ_FAILURES = 30


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base and return base."""
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration with layering:
    - `config/default.yaml` (checked in)
    - `config/config.yaml` (local overrides)
    - plus any explicitly provided `--config` path (treated as overrides)
    """
    try:
        config_dir = os.path.dirname(config_path)
        base_path = os.path.join(config_dir, "default.yaml")
        local_overrides_path = os.path.join(config_dir, "config.yaml")

        merged: Dict[str, Any] = {}
        if os.path.exists(base_path):
            merged = _read_yaml(base_path)
        if os.path.exists(local_overrides_path):
            merged = _deep_merge(merged, _read_yaml(local_overrides_path))

        explicit = os.path.abspath(config_path)
        if (
            os.path.exists(config_path)
            and explicit != os.path.abspath(local_overrides_path)
            and explicit != os.path.abspath(base_path)
        ):
            merged = _deep_merge(merged, _read_yaml(config_path))

        return merged
    except Exception as e:
        logging.error(f"Failed to load configuration: {e}")
        sys.exit(1)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate configuration file structure and values.

    Args:
        config: Configuration dictionary

    Returns:
        Tuple of (is_valid, error_message)
    """
    required_sections = ['detection', 'storage', 'log_path', 'log_level']
    for section in required_sections:
        if section not in config:
            return False, f"Missing required configuration section: {section}"

    detection = config.get('detection') or {}
    if not isinstance(detection, dict):
        return False, "detection must be a mapping"
    for key in ('model_path', 'labels_path'):
        if not isinstance(detection.get(key), str) or not detection.get(key):
            return False, f"Missing detection.{key}"

    conf = detection.get('conf_threshold', 0.25)
    if not _is_number(conf) or not 0.0 <= conf <= 1.0:
        return False, "detection.conf_threshold must be a number in [0, 1]"
    iou = detection.get('iou_threshold', 0.4)
    if not _is_number(iou) or not 0.0 < iou <= 1.0:
        return False, "detection.iou_threshold must be a number in (0, 1]"

    threads = detection.get('num_threads', 4)
    if not isinstance(threads, int) or threads <= 0:
        return False, "detection.num_threads must be a positive integer"
    timeout = detection.get('batch_timeout_s', 15.0)
    if not _is_number(timeout) or timeout <= 0:
        return False, "detection.batch_timeout_s must be a positive number"
    for key in ('min_free_memory_mb', 'min_free_memory_after_oom_mb', 'max_consecutive_oom_errors'):
        value = detection.get(key, 1)
        if not isinstance(value, int) or value < 0:
            return False, f"detection.{key} must be a non-negative integer"

    recovery = config.get('recovery') or {}
    if not isinstance(recovery, dict):
        return False, "recovery must be a mapping"
    max_crashes = recovery.get('max_crashes_per_session', 3)
    if not isinstance(max_crashes, int) or max_crashes <= 0:
        return False, "recovery.max_crashes_per_session must be a positive integer"
    high = recovery.get('high_memory_ratio', 0.8)
    critical = recovery.get('critical_memory_ratio', 0.9)
    if not _is_number(high) or not _is_number(critical) or not 0.0 < high <= critical <= 1.0:
        return False, "recovery memory ratios must satisfy 0 < high_memory_ratio <= critical_memory_ratio <= 1"

    storage = config.get('storage') or {}
    if not isinstance(storage, dict) or 'local_database_path' not in storage:
        return False, "Missing storage.local_database_path"

    camera = config.get('camera') or {}
    if not isinstance(camera, dict):
        return False, "camera must be a mapping"
    device_id = camera.get('device_id', 0)
    if not isinstance(device_id, (int, str)) or isinstance(device_id, bool):
        return False, "camera.device_id must be an integer (index) or string (URL)"
    if isinstance(device_id, int) and device_id < 0:
        return False, "camera.device_id integer must be non-negative"

    if config['log_level'] not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
        return False, "log_level must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"

    return True, None


def build_runtime(config: Config, runner_factory=create_onnx_runner) -> RuntimeContext:
    """Create the recovery manager, engine, store and overlay for one process."""
    recovery = CrashRecoveryManager(
        preferences=PreferenceStore(config.recovery.state_path),
        config=config.recovery,
    )
    recovery.initialize()

    store = DetectionStore(config.storage.local_database_path)
    store.initialize()

    engine = DetectionEngine(runner_factory, recovery, config=config.detection)
    return RuntimeContext(
        config=config,
        recovery=recovery,
        engine=engine,
        store=store,
        overlay=OverlayRenderer(),
    )


def collect_images(paths: List[str]) -> List[str]:
    """Expand directories into the image files they contain, sorted."""
    files: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            for name in sorted(os.listdir(path)):
                if name.lower().endswith(IMAGE_EXTENSIONS):
                    files.append(os.path.join(path, name))
        elif os.path.isfile(path):
            files.append(path)
        else:
            logging.warning(f"Skipping missing path: {path}")
    return files


def run_detect(ctx: RuntimeContext, paths: List[str], output_dir: Optional[str]) -> int:
    service = PhotoBatchService(ctx)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)

    try:
        for path in collect_images(paths):
            image_id = os.path.abspath(path)
            image = cv2.imread(path, cv2.IMREAD_COLOR)
            if image is None:
                logging.error(f"Could not read image: {path}")
                continue

            boxes = service.process_photo(image_id, image)
            counts = summarize_counts(boxes)
            summary = ", ".join(f"{name} x{count}" for name, count in counts.items()) or "no medications"
            print(f"{path}: {summary}")

            if output_dir:
                annotated = image.copy()
                ctx.overlay.set_image_source_info(image.shape[1], image.shape[0])
                ctx.overlay.set_results(boxes)
                ctx.overlay.draw(annotated)
                out_path = os.path.join(output_dir, os.path.basename(path))
                if not cv2.imwrite(out_path, annotated):
                    logging.error(f"Could not write annotated image: {out_path}")
    finally:
        service.shutdown()
    return 0


def _open_camera(ctx: RuntimeContext, device_id):
    camera = cv2.VideoCapture(device_id)
    if not camera.isOpened():
        logging.error(f"Could not open camera {device_id}")
        ctx.recovery.record_crash(CrashType.CAMERA_ERROR, f"Could not open camera {device_id}")
        camera.release()
        return None
    return camera


def run_camera(ctx: RuntimeContext, device_id, display: bool) -> int:
    camera = _open_camera(ctx, device_id)
    if camera is None:
        return 1

    def on_result(frame, result):
        if not result.is_empty:
            logging.info(f"Frame: {summarize_counts(result.boxes)} in {result.elapsed_ms}ms")

    ingest = FrameIngestService(ctx, on_result=on_result)
    logging.info(f"Camera {device_id} started")
    read_failures = 0
    try:
        while True:
            ok, frame = camera.read()
            if not ok or frame is None:
                logging.warning("Failed to read frame from camera")
                read_failures += 1
                if read_failures >= MAX_READ_FAILURES:
                    read_failures = 0
                    ctx.recovery.record_crash(
                        CrashType.CAMERA_ERROR, f"{MAX_READ_FAILURES} consecutive frame reads failed"
                    )
                    if RecoveryAction.RESTART_CAMERA in ctx.recovery.get_recovery_recommendations():
                        logging.warning(f"Restarting camera {device_id}")
                        camera.release()
                        camera = _open_camera(ctx, device_id)
                        if camera is None:
                            return 1
                time.sleep(0.1)
                continue
            read_failures = 0

            ingest.submit(frame)

            if display:
                preview = frame.copy()
                ctx.overlay.draw(preview)
                cv2.imshow("Medication Detector", preview)
                if cv2.waitKey(1) & 0xFF == ord('q'):
                    break
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
    finally:
        ingest.shutdown()
        if camera is not None:
            camera.release()
        if display:
            cv2.destroyAllWindows()
        logging.info(f"Camera stopped ({ingest.frames_dropped} frames dropped while busy)")
    return 0


def run_history(ctx: RuntimeContext, limit: int) -> int:
    sessions = ctx.store.get_all_sessions()
    if not sessions:
        print("No detection history")
        return 0
    for session in sessions[:limit]:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(session.timestamp_ms / 1000))
        summary = ctx.store.get_detection_summary(session.id)
        counts = ", ".join(f"{name} x{count}" for name, count in summary.items()) or "no medications"
        print(f"[{session.id}] {ts} {session.image_id}: {counts}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main application function."""
    parser = argparse.ArgumentParser(description='Medication Detector')
    parser.add_argument('--config', type=str, default='config/config.yaml',
                        help='Path to configuration file')
    parser.add_argument('--conf', type=float, default=None,
                        help='Override detection.conf_threshold')
    parser.add_argument('--iou', type=float, default=None,
                        help='Override detection.iou_threshold')
    subparsers = parser.add_subparsers(dest='command', required=True)

    detect_parser = subparsers.add_parser('detect', help='Detect medications in photos')
    detect_parser.add_argument('paths', nargs='+', help='Image files or directories')
    detect_parser.add_argument('--output', type=str, default=None,
                               help='Directory for annotated copies')

    camera_parser = subparsers.add_parser('camera', help='Run live detection')
    camera_parser.add_argument('--display', action='store_true',
                               help='Enable visual display')

    history_parser = subparsers.add_parser('history', help='List stored detections')
    history_parser.add_argument('--limit', type=int, default=20)

    args = parser.parse_args(argv)

    raw_config = load_config(args.config)
    if args.conf is not None:
        raw_config.setdefault('detection', {})['conf_threshold'] = args.conf
    if args.iou is not None:
        raw_config.setdefault('detection', {})['iou_threshold'] = args.iou

    is_valid, error_msg = validate_config(raw_config)
    if not is_valid:
        logging.error(f"Configuration validation failed: {error_msg}")
        return 1

    setup_logging(raw_config['log_path'], raw_config['log_level'])
    config = Config.from_dict(raw_config)
    logging.info("Starting Medication Detector")

    ctx = build_runtime(config)
    uninstall_crash_handler = install_crash_handler(ctx.recovery)
    try:
        if args.command == 'history':
            return run_history(ctx, args.limit)

        if not ctx.engine.setup_from_files(config.detection.model_path, config.detection.labels_path):
            logging.error("Detector setup failed, exiting")
            return 1

        if args.command == 'detect':
            return run_detect(ctx, args.paths, args.output)
        return run_camera(ctx, config.camera.device_id, args.display)
    finally:
        ctx.close()
        uninstall_crash_handler()
        logging.info("Medication Detector stopped")


if __name__ == "__main__":
    sys.exit(main())
