"""
Detection error types.

Each fallible stage of the engine raises one of these; DetectionEngine maps
them to an empty detection plus counters and telemetry.
"""


class DetectionError(Exception):
    """Base class for detection failures."""


class ModelLoadError(DetectionError):
    """Model/labels could not be loaded or the model shape is unusable."""


class InvalidInputError(DetectionError):
    """Malformed image, zero-size frame or output buffer size mismatch."""


class AllocationError(DetectionError):
    """A buffer could not be allocated (image, tensor or output)."""


class InferenceError(DetectionError):
    """The model runner failed."""
