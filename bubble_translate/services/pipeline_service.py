"""
Pipeline orchestrator: load -> preprocess -> infer -> decode -> masks ->
recognize -> translate, for one image at a time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from bubble_translate.config import Settings, get_settings
from bubble_translate.exceptions import InferenceError, ModelLoadError
from bubble_translate.models.detection import Detection
from bubble_translate.models.messages import RequestSettings
from bubble_translate.services.detector_service import DetectorModel
from bubble_translate.services.limiter import ConcurrencyLimiter
from bubble_translate.services.ocr_service import RecognitionEnginePool
from bubble_translate.services.recognition_service import RegionRecognitionStage
from bubble_translate.services.translate_service import TranslationStage
from bubble_translate.utils.geometry import non_max_suppression
from bubble_translate.utils.mask_utils import crop_mask, reconstruct_mask

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    MODEL_LOADING = "model_loading"
    PREPROCESSING = "preprocessing"
    INFERRING = "inferring"
    DECODING = "decoding"
    MASK_RECONSTRUCTING = "mask_reconstructing"
    RECOGNIZING = "recognizing"
    TRANSLATING = "translating"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class PipelineOutcome:
    states: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    detections: Optional[List[Detection]] = None
    error: Optional[str] = None

    @property
    def state(self) -> PipelineState:
        return self.states[-1]

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.COMPLETE

    def enter(self, state: PipelineState) -> None:
        self.states.append(state)

    def fail(self, error: str) -> "PipelineOutcome":
        self.states.append(PipelineState.FAILED)
        self.detections = None
        self.error = error
        return self


class PipelineOrchestrator:
    """
    Runs one detection request end to end.

    Fatal errors (model load, inference) end in FAILED with no detections.
    Per-detection recognition and translation failures never fail the request.
    """

    def __init__(
        self,
        detector: DetectorModel,
        recognition: RegionRecognitionStage,
        translation: TranslationStage,
        iou_threshold: float = 0.45,
        class_aware_nms: bool = False,
        mask_threshold: float = 0.5,
        mask_invert: bool = False,
    ):
        self.detector = detector
        self.recognition = recognition
        self.translation = translation
        self.iou_threshold = iou_threshold
        self.class_aware_nms = class_aware_nms
        self.mask_threshold = mask_threshold
        self.mask_invert = mask_invert

    async def run(self, image: np.ndarray, settings: RequestSettings, request_id: str = "") -> PipelineOutcome:
        """
        Detect, recognize and translate every text region of an image.

        Args:
            image: RGB uint8 [H, W, 3]
            settings: Settings snapshot for this request
            request_id: Correlation id for log lines

        Returns:
            PipelineOutcome ending in COMPLETE or FAILED
        """
        outcome = PipelineOutcome()
        start_time = time.time()
        height, width = image.shape[:2]
        image_size = (width, height)

        if not self.detector.is_loaded:
            outcome.enter(PipelineState.MODEL_LOADING)
            try:
                await self.detector.load()
            except ModelLoadError as e:
                logger.error(f"[Request {request_id}] {e}")
                return outcome.fail(str(e))

        try:
            outcome.enter(PipelineState.PREPROCESSING)
            tensor = self.detector.preprocess(image)
            outcome.enter(PipelineState.INFERRING)
            outputs = await self.detector.infer(tensor)
            outcome.enter(PipelineState.DECODING)
            detections = self._decode(outputs, image_size, outcome)
        except InferenceError as e:
            logger.error(f"[Request {request_id}] {e}")
            return outcome.fail(str(e))
        except Exception as e:
            logger.error(f"[Request {request_id}] Inference failed: {e}", exc_info=True)
            return outcome.fail(f"Inference failed: {e}")

        logger.info(f"[Request {request_id}] {len(detections)} detections on {width}x{height} image")

        outcome.enter(PipelineState.RECOGNIZING)
        recognized = await asyncio.gather(
            *(self.recognition.recognize(image, d, settings, request_id) for d in detections)
        )
        for detection, result in zip(detections, recognized):
            detection.text = result.text
            detection.font_size = result.font_size
            detection.line_boxes = result.line_boxes

        outcome.enter(PipelineState.TRANSLATING)
        translated = await asyncio.gather(
            *(
                self.translation.translate(
                    d.text,
                    settings.source_language,
                    settings.target_language,
                    settings.translation_service,
                    settings,
                    request_id,
                )
                for d in detections
            )
        )
        for detection, text in zip(detections, translated):
            detection.translated_text = text

        outcome.enter(PipelineState.COMPLETE)
        outcome.detections = detections
        logger.info(f"[Request {request_id}] Pipeline complete in {time.time() - start_time:.2f}s")
        return outcome

    def _decode(self, outputs: List[np.ndarray], image_size: tuple, outcome: PipelineOutcome) -> List[Detection]:
        decoded = self.detector.decode(outputs, image_size)
        detections = non_max_suppression(
            decoded.detections, self.iou_threshold, per_class=self.class_aware_nms
        )

        if decoded.prototypes is not None:
            outcome.enter(PipelineState.MASK_RECONSTRUCTING)
            for detection in detections:
                if detection.coefficients is None:
                    continue
                full = reconstruct_mask(
                    detection.coefficients,
                    decoded.prototypes,
                    image_size,
                    threshold=self.mask_threshold,
                    invert=self.mask_invert,
                )
                detection.mask = crop_mask(full, detection.box)
        return detections

    async def close(self) -> None:
        await self.recognition.pool.close()
        self.detector.close()


def build_orchestrator(config: Optional[Settings] = None) -> PipelineOrchestrator:
    """Wire the detector, engine pool, limiters and stages from settings."""
    config = config or get_settings()

    detector = DetectorModel(
        model_path=config.MODEL_PATH,
        family=config.MODEL_FAMILY,
        input_size=config.MODEL_INPUT_SIZE,
        confidence_threshold=config.CONFIDENCE_THRESHOLD,
        class_labels=config.class_labels,
        num_threads=config.MODEL_NUM_THREADS,
        device=config.MODEL_DEVICE,
    )
    recognition = RegionRecognitionStage(
        pool=RecognitionEnginePool(max_engines=config.OCR_MAX_ENGINES),
        limiter=ConcurrencyLimiter(config.OCR_CONCURRENCY, name="ocr"),
        upscale_factor=config.OCR_UPSCALE_FACTOR,
        min_block_confidence=config.OCR_MIN_BLOCK_CONFIDENCE,
        min_line_confidence=config.OCR_MIN_LINE_CONFIDENCE,
        min_word_confidence=config.OCR_MIN_WORD_CONFIDENCE,
        bubble_classes=config.bubble_classes,
        default_language=config.OCR_DEFAULT_LANGUAGE,
    )
    translation = TranslationStage(
        limiter=ConcurrencyLimiter(config.TRANSLATE_CONCURRENCY, name="translate"),
        max_providers=config.TRANSLATE_MAX_PROVIDERS,
    )
    return PipelineOrchestrator(
        detector=detector,
        recognition=recognition,
        translation=translation,
        iou_threshold=config.IOU_THRESHOLD,
        class_aware_nms=config.CLASS_AWARE_NMS,
        mask_threshold=config.MASK_THRESHOLD,
        mask_invert=config.MASK_INVERT,
    )
