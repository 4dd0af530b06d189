"""
Image helpers: payload decoding, cropping, OCR preprocessing, mask encoding.
"""

import base64
import binascii
import io
import logging
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image

from bubble_translate.exceptions import ImageDecodeError
from bubble_translate.models.detection import Box
from bubble_translate.models.messages import RawImageData

logger = logging.getLogger(__name__)

# AVIF/HEIF support for encoded payloads
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    logger.info("AVIF/HEIF decoding enabled")
except ImportError:
    logger.warning("pillow-heif not installed, AVIF/HEIF payloads cannot be decoded")


def _b64decode(data: str) -> bytes:
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"Invalid base64 image data: {e}") from e


def decode_image_bytes(image_bytes: bytes) -> np.ndarray:
    """
    Decode an encoded image file (JPEG, PNG, WEBP, AVIF, ...) into RGB pixels.

    Args:
        image_bytes: Raw file bytes

    Returns:
        uint8 array [H, W, 3]
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except Exception as e:
        raise ImageDecodeError(f"Unsupported or corrupt image: {e}") from e

    logger.debug(f"Decoded image: format={img.format}, size={img.size}, mode={img.mode}")

    if img.mode in ("RGBA", "LA", "P"):
        # Flatten transparency onto white
        if img.mode == "P":
            img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")

    return np.asarray(img, dtype=np.uint8).copy()


def decode_raw_pixels(raw: RawImageData) -> np.ndarray:
    """Turn a raw row-major pixel buffer into RGB pixels."""
    buf = _b64decode(raw.data)
    expected = raw.width * raw.height * raw.channels
    if len(buf) != expected:
        raise ImageDecodeError(
            f"Pixel buffer has {len(buf)} bytes, expected {expected} "
            f"({raw.width}x{raw.height}x{raw.channels})"
        )

    pixels = np.frombuffer(buf, dtype=np.uint8).reshape(raw.height, raw.width, raw.channels)
    if raw.channels == 4:
        return np.ascontiguousarray(pixels[:, :, :3])
    if raw.channels == 1:
        return cv2.cvtColor(pixels[:, :, 0], cv2.COLOR_GRAY2RGB)
    return pixels.copy()


def decode_image_payload(payload: Union[str, bytes, RawImageData]) -> np.ndarray:
    """
    Decode any supported image payload into RGB pixels.

    Args:
        payload: base64 string / data URL of an encoded file, raw file bytes, or raw pixel buffer

    Returns:
        uint8 array [H, W, 3]
    """
    if isinstance(payload, RawImageData):
        return decode_raw_pixels(payload)
    if isinstance(payload, str):
        payload = _b64decode(payload)
    if not payload:
        raise ImageDecodeError("Empty image payload")
    return decode_image_bytes(payload)


def crop_region(image: np.ndarray, box: Box) -> Tuple[np.ndarray, Tuple[int, int]]:
    """
    Crop a box out of an image, clamped to the image bounds.

    Returns:
        (crop, (x_offset, y_offset)); crop may be empty if the box lies outside
    """
    h, w = image.shape[:2]
    x1 = int(np.clip(np.floor(box.x1), 0, w))
    y1 = int(np.clip(np.floor(box.y1), 0, h))
    x2 = int(np.clip(np.ceil(box.x2), 0, w))
    y2 = int(np.clip(np.ceil(box.y2), 0, h))
    return image[y1:y2, x1:x2].copy(), (x1, y1)


def upscale(image: np.ndarray, factor: float) -> np.ndarray:
    if factor == 1.0 or image.size == 0:
        return image
    h, w = image.shape[:2]
    return cv2.resize(
        image,
        (max(1, int(round(w * factor))), max(1, int(round(h * factor)))),
        interpolation=cv2.INTER_CUBIC,
    )


def to_grayscale(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)


def hard_threshold(gray: np.ndarray) -> np.ndarray:
    """
    Binarize a speech-bubble crop: light blur + Otsu.
    Output is dark text on a light background.
    """
    blurred = cv2.GaussianBlur(gray, (3, 3), 0)
    _, binary = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    if np.mean(binary) < 127:
        binary = 255 - binary
    return binary


def blur_edges(gray: np.ndarray, blur_radius: int = 10) -> np.ndarray:
    """
    Soften the crop towards its border with an elliptical cos^2 falloff.

    The centre keeps the original pixels, the border fades into a blurred copy.
    Thin strokes of free-floating text survive this better than thresholding.
    """
    h, w = gray.shape[:2]
    if h == 0 or w == 0:
        return gray

    ksize = max(1, blur_radius) * 2 + 1
    blurred = cv2.GaussianBlur(gray, (ksize, ksize), 0)

    ys, xs = np.mgrid[0:h, 0:w].astype(np.float32)
    cx, cy = w // 2, h // 2
    dist = np.sqrt(((xs - cx) / max(w, 1)) ** 2 + ((ys - cy) / max(h, 1)) ** 2)
    weight = np.where(dist <= 1.0, np.cos(dist * np.pi / 2) ** 2, 0.0)

    blended = gray.astype(np.float32) * weight + blurred.astype(np.float32) * (1.0 - weight)
    return np.clip(np.round(blended), 0, 255).astype(np.uint8)


def preprocess_for_ocr(image: np.ndarray, hard: bool) -> np.ndarray:
    """Greyscale, then hard threshold (bubbles) or soft edge blur (free text)."""
    gray = to_grayscale(image)
    if gray.size == 0:
        return gray
    return hard_threshold(gray) if hard else blur_edges(gray)


def encode_png_base64(image: np.ndarray) -> str:
    """Encode an array as a base64 PNG (no data URL prefix)."""
    output = io.BytesIO()
    Image.fromarray(image).save(output, format="PNG")
    return base64.b64encode(output.getvalue()).decode("utf-8")


def mask_to_data_url(mask: np.ndarray) -> str:
    return f"data:image/png;base64,{encode_png_base64(mask)}"
