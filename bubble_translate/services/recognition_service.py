"""
Per-detection text recognition.

Crops a detection out of the source image, preprocesses it, runs it through
the OCR limiter on a pooled engine and turns the structured result into text,
a font size estimate and per-line boxes.
"""

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional, Sequence, Tuple

import numpy as np

from bubble_translate.models.detection import Box, Detection
from bubble_translate.models.messages import RequestSettings
from bubble_translate.services.limiter import ConcurrencyLimiter
from bubble_translate.services.ocr_service import (
    CloudVisionEngine,
    OCRResult,
    RecognitionEngine,
    RecognitionEnginePool,
)
from bubble_translate.utils.image_utils import crop_region, preprocess_for_ocr, upscale

logger = logging.getLogger(__name__)

_HYPHEN_BREAK_RE = re.compile(r"(\w)-\s*\n\s*(\w)")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class RecognitionResult:
    text: str
    font_size: float
    line_boxes: List[Box] = field(default_factory=list)


def normalize_text(lines: Sequence[str]) -> str:
    """Join OCR lines, undo line-wrap hyphenation and collapse whitespace."""
    joined = "\n".join(line.strip() for line in lines if line.strip())
    joined = _HYPHEN_BREAK_RE.sub(r"\1\2", joined)
    return _WHITESPACE_RE.sub(" ", joined).strip()


class RegionRecognitionStage:
    """
    Recognizes the text inside one detection at a time.

    Never raises for a single detection: failures come back as empty text.
    """

    def __init__(
        self,
        pool: RecognitionEnginePool,
        limiter: ConcurrencyLimiter,
        upscale_factor: float = 3.0,
        min_block_confidence: float = 40.0,
        min_line_confidence: float = 60.0,
        min_word_confidence: float = 20.0,
        bubble_classes: Sequence[int] = (1,),
        default_language: str = "en",
        cloud_engine_factory: Optional[Callable[[str, str], RecognitionEngine]] = None,
    ):
        self.pool = pool
        self.limiter = limiter
        self.upscale_factor = float(upscale_factor)
        self.min_block_confidence = min_block_confidence
        self.min_line_confidence = min_line_confidence
        self.min_word_confidence = min_word_confidence
        self.bubble_classes = set(bubble_classes)
        self.default_language = default_language
        self._cloud_engine_factory = cloud_engine_factory or (
            lambda api_key, language: CloudVisionEngine(api_key=api_key, language=language)
        )

    def _fallback(self, detection: Detection, line_count: int = 1) -> RecognitionResult:
        return RecognitionResult(text="", font_size=detection.box.height / max(1, line_count))

    @contextlib.asynccontextmanager
    async def _engine(self, settings: RequestSettings) -> AsyncIterator[Optional[RecognitionEngine]]:
        if settings.ocr_service == "cloud-vision":
            api_key = settings.credential("apiKey")
            if not api_key:
                yield None
                return
            engine = self._cloud_engine_factory(api_key, settings.source_language)
            try:
                yield engine
            finally:
                engine.close()
            return

        language = settings.source_language
        if not language or language == "auto":
            language = self.default_language
        async with self.pool.lease(language) as engine:
            yield engine

    def _read_region(
        self,
        engine: RecognitionEngine,
        image: np.ndarray,
        detection: Detection,
    ) -> Optional[Tuple[OCRResult, Tuple[int, int]]]:
        """Crop, upscale, preprocess and recognize one region. Runs in a worker thread."""
        crop, offset = crop_region(image, detection.box)
        if crop.size == 0:
            return None
        region = preprocess_for_ocr(
            upscale(crop, self.upscale_factor),
            hard=detection.class_index in self.bubble_classes,
        )
        return engine.recognize(region), offset

    async def _recognize_limited(
        self,
        image: np.ndarray,
        detection: Detection,
        settings: RequestSettings,
        request_id: str,
    ) -> Optional[Tuple[OCRResult, Tuple[int, int]]]:
        async with self._engine(settings) as engine:
            if engine is None:
                logger.info(f"[Request {request_id}] OCR skipped: no credentials for {settings.ocr_service}")
                return None
            return await asyncio.to_thread(self._read_region, engine, image, detection)

    async def recognize(
        self,
        image: np.ndarray,
        detection: Detection,
        settings: RequestSettings,
        request_id: str = "",
    ) -> RecognitionResult:
        """
        Recognize the text of one detection.

        Region preparation and the engine call both happen under the OCR
        limiter, so at most max_concurrent upscaled regions exist at once.

        Args:
            image: Source image, RGB [H, W, 3]
            detection: Detection whose box is read
            settings: Request settings (OCR service, source language, credentials)
            request_id: Correlation id for log lines

        Returns:
            RecognitionResult; text is "" when nothing passed the confidence bars
        """
        try:
            read = await self.limiter.run(
                lambda: self._recognize_limited(image, detection, settings, request_id)
            )
        except Exception as e:
            logger.warning(f"[Request {request_id}] Recognition failed for box {detection.box.to_dict()}: {e}")
            return self._fallback(detection)

        if read is None:
            return self._fallback(detection)
        ocr_result, offset = read
        return self._assemble(ocr_result, detection, self.upscale_factor, offset)

    def _assemble(
        self,
        ocr_result: OCRResult,
        detection: Detection,
        factor: float,
        offset: tuple,
    ) -> RecognitionResult:
        x_off, y_off = offset
        kept_lines: List[str] = []
        line_heights: List[float] = []
        line_boxes: List[Box] = []

        for block in ocr_result.blocks:
            if block.confidence < self.min_block_confidence:
                continue
            for line in block.lines:
                if line.confidence < self.min_line_confidence:
                    continue
                words = [w.text for w in line.words if w.confidence >= self.min_word_confidence and w.text.strip()]
                if not words:
                    continue
                kept_lines.append(" ".join(words))
                line_heights.append(line.bbox.height / factor)
                line_boxes.append(
                    Box(
                        x1=x_off + line.bbox.x1 / factor,
                        y1=y_off + line.bbox.y1 / factor,
                        x2=x_off + line.bbox.x2 / factor,
                        y2=y_off + line.bbox.y2 / factor,
                    )
                )

        if not kept_lines:
            return self._fallback(detection, line_count=len(ocr_result.lines))

        return RecognitionResult(
            text=normalize_text(kept_lines),
            font_size=float(np.mean(line_heights)),
            line_boxes=line_boxes,
        )
