"""
Medication Detector - Detection Module

Loads a detection model and turns images into deduplicated bounding boxes.
"""

from .engine import DetectionEngine, DetectionListener
from .errors import AllocationError, DetectionError, InferenceError, InvalidInputError, ModelLoadError
from .postprocess import calculate_iou, decode_output, non_max_suppression, postprocess

__all__ = [
    'DetectionEngine',
    'DetectionListener',
    'DetectionError',
    'ModelLoadError',
    'InvalidInputError',
    'AllocationError',
    'InferenceError',
    'calculate_iou',
    'decode_output',
    'non_max_suppression',
    'postprocess',
]
