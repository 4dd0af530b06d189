"""
Box decoding, IoU and non-max suppression.

Everything here is pure: arrays in, detections out, no I/O.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from bubble_translate.models.detection import Box, Detection


def softmax(logits: np.ndarray, axis: int = -1) -> np.ndarray:
    shifted = logits - np.max(logits, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=axis, keepdims=True)


def box_to_corners(
    box: Sequence[float],
    image_size: Tuple[int, int],
    box_format: str = "cxcywh",
    normalized: bool = True,
) -> Box:
    """
    Convert one raw box into source-pixel corners, clipped to the image.

    Args:
        box: 4 numbers, either (cx, cy, w, h) or (x1, y1, x2, y2)
        image_size: (width, height) of the source image
        box_format: "cxcywh" or "xyxy"
        normalized: True if coordinates are in [0, 1]

    Returns:
        Box in pixel coordinates
    """
    width, height = image_size
    a, b, c, d = (float(v) for v in box[:4])

    if box_format == "cxcywh":
        x1, y1, x2, y2 = a - c / 2, b - d / 2, a + c / 2, b + d / 2
    elif box_format == "xyxy":
        x1, y1, x2, y2 = a, b, c, d
    else:
        raise ValueError(f"Unknown box format: {box_format}")

    if normalized:
        x1, x2 = x1 * width, x2 * width
        y1, y2 = y1 * height, y2 * height

    x1 = min(max(x1, 0.0), float(width))
    x2 = min(max(x2, 0.0), float(width))
    y1 = min(max(y1, 0.0), float(height))
    y2 = min(max(y2, 0.0), float(height))
    return Box(x1=x1, y1=y1, x2=x2, y2=y2)


def decode_candidates(
    boxes: np.ndarray,
    scores: np.ndarray,
    image_size: Tuple[int, int],
    confidence_threshold: float,
    *,
    class_ids: Optional[np.ndarray] = None,
    box_format: str = "cxcywh",
    normalized: bool = True,
    background_class: Optional[int] = 0,
    coefficients: Optional[np.ndarray] = None,
    class_labels: Optional[Sequence[str]] = None,
) -> List[Detection]:
    """
    Turn raw per-candidate arrays into detections.

    Args:
        boxes: [N, 4] raw boxes
        scores: [N, K] class scores (argmax is taken) or [N] objectness scores
        image_size: (width, height) of the source image
        confidence_threshold: Candidates scoring below this are rejected
        class_ids: [N] class ids, required when scores is 1-D
        box_format: "cxcywh" or "xyxy"
        normalized: True if box coordinates are in [0, 1]
        background_class: Class id that is always rejected (None disables)
        coefficients: Optional [N, C] mask coefficients carried onto each detection
        class_labels: Optional label lookup by class id

    Returns:
        Detections in candidate order
    """
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float32)

    if scores.ndim == 2:
        best_class = np.argmax(scores, axis=1)
        best_score = scores[np.arange(scores.shape[0]), best_class]
    else:
        if class_ids is None:
            raise ValueError("class_ids is required with 1-D scores")
        best_class = np.asarray(class_ids).astype(np.int64).reshape(-1)
        best_score = scores.reshape(-1)

    if not (len(boxes) == len(best_score) == len(best_class)):
        raise ValueError(
            f"Candidate count mismatch: boxes={len(boxes)}, scores={len(best_score)}, classes={len(best_class)}"
        )

    detections: List[Detection] = []
    for i in range(len(boxes)):
        class_index = int(best_class[i])
        confidence = float(best_score[i])
        if background_class is not None and class_index == background_class:
            continue
        if confidence <= 0.0 or confidence < confidence_threshold:
            continue

        box = box_to_corners(boxes[i], image_size, box_format=box_format, normalized=normalized)
        if box.width <= 0 or box.height <= 0:
            continue

        label = None
        if class_labels is not None and 0 <= class_index < len(class_labels):
            label = class_labels[class_index]

        detections.append(
            Detection(
                box=box,
                confidence=min(confidence, 1.0),
                class_index=class_index,
                class_label=label,
                coefficients=None if coefficients is None else np.asarray(coefficients[i], dtype=np.float32),
            )
        )
    return detections


def iou(a: Box, b: Box) -> float:
    """Intersection over union; 0 for disjoint boxes."""
    ix1 = max(a.x1, b.x1)
    iy1 = max(a.y1, b.y1)
    ix2 = min(a.x2, b.x2)
    iy2 = min(a.y2, b.y2)

    intersection = max(0.0, ix2 - ix1) * max(0.0, iy2 - iy1)
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def non_max_suppression(
    detections: Sequence[Detection],
    iou_threshold: float,
    per_class: bool = False,
) -> List[Detection]:
    """
    Greedy NMS.

    Candidates are visited in descending confidence (stable for ties). Each kept
    candidate removes every remaining one whose IoU with it is >= iou_threshold.
    With per_class=True only candidates of the same class suppress each other.
    """
    remaining = sorted(detections, key=lambda d: d.confidence, reverse=True)
    kept: List[Detection] = []

    while remaining:
        best = remaining.pop(0)
        kept.append(best)
        remaining = [
            d for d in remaining
            if (per_class and d.class_index != best.class_index)
            or iou(best.box, d.box) < iou_threshold
        ]
    return kept
