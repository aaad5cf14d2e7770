"""
Image preprocessing for the detection model.

Images are OpenCV-style numpy arrays: HxW (grayscale), HxWx3 (BGR) or HxWx4
(BGRA). They are resized to the model's tensor size, converted to RGB,
normalized with mean 0 and scale 1/255 and laid out as NHWC or NCHW.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import cv2
import numpy as np

from detection.errors import AllocationError, InvalidInputError, ModelLoadError

INPUT_MEAN = 0.0
INPUT_STANDARD_DEVIATION = 255.0

LAYOUT_NHWC = "NHWC"
LAYOUT_NCHW = "NCHW"


def _dim(value) -> int:
    if not isinstance(value, (int, np.integer)) or value <= 0:
        raise ModelLoadError(f"Unsupported dynamic or invalid dimension: {value!r}")
    return int(value)


def parse_input_shape(shape) -> Tuple[int, int, str]:
    """
    Return (tensor_width, tensor_height, layout) for a 4-D image input.

    Inputs with 3 channels on axis 1 are NCHW, anything else is NHWC.
    """
    if shape is None or len(shape) != 4:
        raise ModelLoadError(f"Expected a 4-D image input, got shape {shape}")
    if shape[1] == 3:
        return _dim(shape[3]), _dim(shape[2]), LAYOUT_NCHW
    return _dim(shape[2]), _dim(shape[1]), LAYOUT_NHWC


def parse_output_shape(shape) -> Tuple[int, int]:
    """Return (num_channels, num_elements) for a [1, C, E] output."""
    if shape is None or len(shape) != 3:
        raise ModelLoadError(f"Expected a [1, channels, elements] output, got shape {shape}")
    return _dim(shape[1]), _dim(shape[2])


def validate_image(image) -> None:
    if image is None:
        raise InvalidInputError("Image is None")
    if not isinstance(image, np.ndarray):
        raise InvalidInputError(f"Image must be a numpy array, got {type(image).__name__}")
    if image.ndim not in (2, 3):
        raise InvalidInputError(f"Image must be 2-D or 3-D, got {image.ndim} dimensions")
    if image.size == 0 or image.shape[0] <= 0 or image.shape[1] <= 0:
        raise InvalidInputError(f"Image has no pixels: shape {image.shape}")
    if image.ndim == 3 and image.shape[2] not in (1, 3, 4):
        raise InvalidInputError(f"Unsupported channel count {image.shape[2]}")


def _to_rgb(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2 or image.shape[2] == 1:
        return cv2.cvtColor(image.reshape(image.shape[0], image.shape[1]), cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def prepare_input(
    image: np.ndarray,
    tensor_width: int,
    tensor_height: int,
    layout: str = LAYOUT_NHWC,
    dtype=np.float32,
    scratch: Optional[List[np.ndarray]] = None,
) -> np.ndarray:
    """
    Build the model input tensor (with batch axis) from an image.

    Intermediate arrays are appended to scratch so the caller can drop them
    once inference is done. The original image is never modified.
    """
    if scratch is None:
        scratch = []
    try:
        resized = cv2.resize(image, (tensor_width, tensor_height), interpolation=cv2.INTER_NEAREST)
        scratch.append(resized)
        rgb = _to_rgb(resized)
        scratch.append(rgb)

        tensor = (rgb.astype(np.float32) - INPUT_MEAN) / INPUT_STANDARD_DEVIATION
        if layout == LAYOUT_NCHW:
            tensor = tensor.transpose(2, 0, 1)
        tensor = np.ascontiguousarray(tensor[np.newaxis, ...], dtype=dtype)
        scratch.append(tensor)
        return tensor
    except MemoryError as e:
        raise AllocationError(f"Could not allocate input tensor: {e}") from e
    except cv2.error as e:
        if "memory" in str(e).lower():
            raise AllocationError(f"Could not allocate resized image: {e}") from e
        raise InvalidInputError(f"Could not convert image: {e}") from e
