"""Pytest configuration and shared fakes for the detection pipeline tests.

Engines, ONNX sessions and translation providers are replaced by small
in-memory fakes so the suite runs without models or network access.
"""
import base64
import io
import logging
from types import SimpleNamespace
from typing import Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

from bubble_translate.models.detection import Box, Detection
from bubble_translate.services.ocr_service import OCRBlock, OCRLine, OCRResult, OCRWord
from bubble_translate.services.pipeline_service import PipelineOutcome, PipelineState


logging.getLogger("PIL").setLevel(logging.WARNING)


def make_line(text: str, confidence: float, bbox: Box, word_confidence: Optional[float] = None) -> OCRLine:
    word_conf = confidence if word_confidence is None else word_confidence
    words = [OCRWord(text=w, confidence=word_conf, bbox=bbox) for w in text.split()]
    return OCRLine(text=text, confidence=confidence, bbox=bbox, words=words)


def make_result(*lines: OCRLine, block_confidence: float = 95.0) -> OCRResult:
    return OCRResult(blocks=[OCRBlock(confidence=block_confidence, lines=list(lines))])


class FakeEngine:
    """Recognition engine returning a canned result."""

    def __init__(self, language: str = "en", result: Optional[OCRResult] = None, error: Optional[Exception] = None):
        self.language = language
        self.result = result or OCRResult()
        self.error = error
        self.calls: List[np.ndarray] = []
        self.closed = False

    def recognize(self, image: np.ndarray) -> OCRResult:
        self.calls.append(image)
        if self.error is not None:
            raise self.error
        return self.result

    def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Translation provider that upper-cases text and counts calls."""

    def __init__(self, name: str = "google", error: Optional[Exception] = None):
        self.name = name
        self.error = error
        self.calls: List[tuple] = []

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        self.calls.append((text, source_language, target_language))
        if self.error is not None:
            raise self.error
        return text.upper()


class FakeSession:
    """Stands in for an onnxruntime.InferenceSession."""

    def __init__(self, outputs: List[np.ndarray], output_names: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.outputs = outputs
        self.output_names = output_names or [f"output{i}" for i in range(len(outputs))]
        self.error = error
        self.feeds: List[Dict[str, np.ndarray]] = []

    def get_inputs(self):
        return [SimpleNamespace(name="images")]

    def get_outputs(self):
        return [SimpleNamespace(name=n) for n in self.output_names]

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        if self.error is not None:
            raise self.error
        return self.outputs


def yolo_output(candidates: List[tuple], num_classes: int = 3, input_size: int = 640) -> np.ndarray:
    """
    Build a [1, 4 + K, N] YOLO tensor from (cx, cy, w, h, class, score) tuples
    given in normalized coordinates.
    """
    preds = np.zeros((4 + num_classes, len(candidates)), dtype=np.float32)
    for i, (cx, cy, w, h, cls, score) in enumerate(candidates):
        preds[:4, i] = np.array([cx, cy, w, h], dtype=np.float32) * input_size
        preds[4 + cls, i] = score
    return preds[np.newaxis, ...]


@pytest.fixture
def synthetic_image():
    """White 200x100 RGB image with a dark block where a bubble's text would be."""
    image = np.full((100, 200, 3), 255, dtype=np.uint8)
    image[40:60, 60:140] = 20
    return image


@pytest.fixture
def png_base64(synthetic_image):
    output = io.BytesIO()
    Image.fromarray(synthetic_image).save(output, format="PNG")
    return base64.b64encode(output.getvalue()).decode("utf-8")


@pytest.fixture
def detection():
    return Detection(box=Box(50.0, 30.0, 150.0, 70.0), confidence=0.9, class_index=1, class_label="bubble")


class FakeOrchestrator:
    """Orchestrator double returning a fixed outcome."""

    def __init__(self, outcome=None, error: Optional[Exception] = None):
        self.outcome = outcome
        self.error = error
        self.runs: List[tuple] = []
        self.closed = False

    async def run(self, image, settings, request_id=""):
        self.runs.append((image.shape, settings, request_id))
        if self.error is not None:
            raise self.error
        return self.outcome

    async def close(self):
        self.closed = True


def completed(*detections):
    outcome = PipelineOutcome()
    outcome.enter(PipelineState.COMPLETE)
    outcome.detections = list(detections)
    return outcome
