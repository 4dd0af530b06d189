"""
Instance mask reconstruction for segmentation models.

A mask is the sigmoid of a per-detection coefficient vector dotted with the
shared prototype planes, thresholded and upscaled to the source image.
"""

from typing import Tuple

import cv2
import numpy as np

from bubble_translate.models.detection import Box


def sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def mask_probabilities(coefficients: np.ndarray, prototypes: np.ndarray) -> np.ndarray:
    """
    Args:
        coefficients: [C]
        prototypes: [C, protoH, protoW]

    Returns:
        [protoH, protoW] foreground probabilities
    """
    coefficients = np.asarray(coefficients, dtype=np.float32).reshape(-1)
    prototypes = np.asarray(prototypes, dtype=np.float32)
    channels, proto_h, proto_w = prototypes.shape
    if coefficients.shape[0] != channels:
        raise ValueError(f"Expected {channels} coefficients, got {coefficients.shape[0]}")

    logits = coefficients @ prototypes.reshape(channels, -1)
    return sigmoid(logits).reshape(proto_h, proto_w)


def reconstruct_mask(
    coefficients: np.ndarray,
    prototypes: np.ndarray,
    image_size: Tuple[int, int],
    threshold: float = 0.5,
    invert: bool = False,
) -> np.ndarray:
    """
    Build a full-resolution mask for one detection.

    Args:
        coefficients: [C] mask coefficients of the detection
        prototypes: [C, protoH, protoW] prototype planes
        image_size: (width, height) of the source image
        threshold: Probabilities strictly above this are foreground
        invert: Return background-keep polarity (255 where the region is NOT)

    Returns:
        uint8 [height, width] plane, 0 = background, 255 = foreground.
        Edges carry intermediate values from the bilinear upscale.
    """
    width, height = image_size
    probs = mask_probabilities(coefficients, prototypes)
    binary = np.where(probs > threshold, 255.0, 0.0).astype(np.float32)

    upscaled = cv2.resize(binary, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
    mask = np.clip(upscaled, 0, 255).astype(np.uint8)
    if invert:
        mask = 255 - mask
    return mask


def crop_mask(mask: np.ndarray, box: Box) -> np.ndarray:
    """Cut the part of a full-resolution mask that lies under a box."""
    h, w = mask.shape[:2]
    x1 = int(np.clip(np.floor(box.x1), 0, w))
    y1 = int(np.clip(np.floor(box.y1), 0, h))
    x2 = int(np.clip(np.ceil(box.x2), 0, w))
    y2 = int(np.clip(np.ceil(box.y2), 0, h))
    return mask[y1:y2, x1:x2].copy()
