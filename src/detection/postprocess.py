"""
YOLO-style output decoding, IoU and Non-Maximum Suppression.

The model output is a flat buffer conceptually shaped [1, C, E]: channels 0-3
hold cx, cy, w, h for each of the E candidates, channels 4..C-1 hold the
per-class scores. Coordinates are normalized to [0, 1].
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from models.detection import BoundingBox, ClassLabels

NUM_BOX_CHANNELS = 4
DEBUG_CONFIDENCE_THRESHOLD = 0.1


def decode_output(
    output: np.ndarray,
    num_channels: int,
    num_elements: int,
    labels: ClassLabels,
    confidence_threshold: float,
) -> List[BoundingBox]:
    """
    Decode candidate boxes from a raw output buffer.

    A candidate survives when its best class score is strictly greater than
    confidence_threshold and all four corners fall inside [0, 1]. Boxes are
    returned in candidate order.

    Raises:
        ValueError: if the buffer does not hold num_channels * num_elements values.
    """
    flat = np.asarray(output, dtype=np.float32).reshape(-1)
    expected = num_channels * num_elements
    if flat.size != expected:
        raise ValueError(f"Output buffer has {flat.size} values, expected {expected}")
    if num_channels <= NUM_BOX_CHANNELS or num_elements <= 0:
        return []

    grid = flat.reshape(num_channels, num_elements)
    scores = grid[NUM_BOX_CHANNELS:]
    # argmax keeps the first maximum; NaN scores never win
    best_idx = np.argmax(np.where(np.isnan(scores), -np.inf, scores), axis=0)
    best_scores = scores[best_idx, np.arange(num_elements)]

    keep = best_scores > np.float32(confidence_threshold)

    cx, cy, w, h = grid[0], grid[1], grid[2], grid[3]
    half = np.float32(2)
    x1 = cx - w / half
    y1 = cy - h / half
    x2 = cx + w / half
    y2 = cy + h / half

    with np.errstate(invalid="ignore"):
        in_range = (
            (x1 >= 0) & (x1 <= 1) & (y1 >= 0) & (y1 <= 1)
            & (x2 >= 0) & (x2 <= 1) & (y2 >= 0) & (y2 <= 1)
            & (x2 > x1) & (y2 > y1)
        )
        candidates = int(np.count_nonzero(best_scores > np.float32(DEBUG_CONFIDENCE_THRESHOLD)))

    valid = np.nonzero(keep & in_range)[0]
    if np.any(keep):
        logging.debug(
            f"Max confidence found: {float(np.nanmax(best_scores))}, candidates: {candidates}, "
            f"above threshold: {int(np.count_nonzero(keep))}, valid: {len(valid)}"
        )

    boxes: List[BoundingBox] = []
    for e in valid:
        class_index = int(best_idx[e])
        label = labels.lookup(class_index)
        boxes.append(
            BoundingBox(
                x1=float(x1[e]),
                y1=float(y1[e]),
                x2=float(x2[e]),
                y2=float(y2[e]),
                cx=float(cx[e]),
                cy=float(cy[e]),
                w=float(w[e]),
                h=float(h[e]),
                confidence=float(best_scores[e]),
                class_index=class_index,
                class_name=str(label),
            )
        )
    return boxes


def calculate_iou(a: BoundingBox, b: BoundingBox) -> float:
    """
    Intersection over union of two boxes.

    The union uses each box's decoded w * h rather than the corner extent.
    """
    x1 = max(a.x1, b.x1)
    y1 = max(a.y1, b.y1)
    x2 = min(a.x2, b.x2)
    y2 = min(a.y2, b.y2)
    intersection = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def non_max_suppression(boxes: Sequence[BoundingBox], iou_threshold: float) -> List[BoundingBox]:
    """
    Greedy NMS.

    Boxes are ordered by descending confidence (ties keep input order); each
    selected box removes every remaining box with IoU >= iou_threshold.
    """
    remaining = sorted(boxes, key=lambda b: b.confidence, reverse=True)
    selected: List[BoundingBox] = []

    while remaining:
        first = remaining.pop(0)
        selected.append(first)
        remaining = [b for b in remaining if calculate_iou(first, b) < iou_threshold]

    return selected


def postprocess(
    output: np.ndarray,
    num_channels: int,
    num_elements: int,
    labels: ClassLabels,
    confidence_threshold: float,
    iou_threshold: float,
) -> List[BoundingBox]:
    """Decode, threshold and deduplicate. Returns [] when nothing survives."""
    boxes = decode_output(output, num_channels, num_elements, labels, confidence_threshold)
    if not boxes:
        logging.debug(f"No detections above threshold {confidence_threshold}")
        return []
    return non_max_suppression(boxes, iou_threshold)
