"""
ONNX detector model: session lifecycle, preprocessing, inference and
family-specific decoding of the raw output tensors.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from bubble_translate.exceptions import InferenceError, ModelLoadError
from bubble_translate.models.detection import Detection
from bubble_translate.utils.geometry import decode_candidates, softmax

logger = logging.getLogger(__name__)

MODEL_FAMILIES = ("yolo", "yolo-seg", "detr", "end2end")


@dataclass
class DecodedOutput:
    """Candidates above the confidence bar, before NMS."""
    detections: List[Detection] = field(default_factory=list)
    # [C, protoH, protoW], segmentation family only
    prototypes: Optional[np.ndarray] = None


def select_providers(device: str = "auto") -> List[str]:
    """Pick onnxruntime execution providers: CUDA when asked for (or available on auto), else CPU."""
    import onnxruntime as ort

    providers = ["CPUExecutionProvider"]
    if device == "cpu":
        return providers
    try:
        available = ort.get_available_providers()
    except Exception:
        available = []
    if "CUDAExecutionProvider" in available:
        providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
    elif device == "cuda":
        logger.warning("CUDA requested but CUDAExecutionProvider is unavailable, using CPU")
    return providers


def create_onnx_session(model_path: str, num_threads: int = 1, device: str = "auto") -> Any:
    """Create an onnxruntime session with reduced arena use and limited threading."""
    import onnxruntime as ort

    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model file not found: {model_path}")

    so = ort.SessionOptions()
    so.enable_mem_pattern = False
    so.enable_cpu_mem_arena = False
    so.intra_op_num_threads = max(1, int(num_threads))
    so.inter_op_num_threads = 1
    so.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC

    providers = select_providers(device)
    session = ort.InferenceSession(model_path, sess_options=so, providers=providers)
    logger.info(f"ONNX session ready: {model_path} (providers={providers})")
    return session


class DetectorModel:
    """
    Lazily loaded detector.

    The session is created once, on first use, even when several requests
    arrive while it is loading. After that it is only ever invoked.
    """

    def __init__(
        self,
        model_path: str,
        family: str = "yolo",
        input_size: int = 640,
        confidence_threshold: float = 0.5,
        class_labels: Optional[Sequence[str]] = None,
        num_threads: int = 1,
        device: str = "auto",
        session_factory: Optional[Callable[[], Any]] = None,
    ):
        if family not in MODEL_FAMILIES:
            raise ValueError(f"Unknown model family '{family}', expected one of {MODEL_FAMILIES}")
        self.model_path = model_path
        self.family = family
        self.input_size = int(input_size)
        self.confidence_threshold = float(confidence_threshold)
        self.class_labels = list(class_labels) if class_labels else None
        self._session_factory = session_factory or (
            lambda: create_onnx_session(model_path, num_threads=num_threads, device=device)
        )
        self._session: Optional[Any] = None
        self._load_lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    @property
    def has_masks(self) -> bool:
        return self.family == "yolo-seg"

    async def load(self) -> None:
        """
        Load the session if it is not resident yet.

        Raises:
            ModelLoadError: when the session cannot be created
        """
        if self._session is not None:
            return
        async with self._load_lock:
            if self._session is not None:
                return
            logger.info(f"Loading detector model ({self.family}) from {self.model_path}")
            try:
                self._session = await asyncio.to_thread(self._session_factory)
            except Exception as e:
                logger.error(f"Failed to load detector model: {e}")
                raise ModelLoadError(f"Failed to load detector model: {e}") from e

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        """
        RGB uint8 [H, W, 3] -> float32 [1, 3, S, S] in [0, 1].
        """
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
        resized = cv2.resize(image[:, :, :3], (self.input_size, self.input_size), interpolation=cv2.INTER_LINEAR)
        tensor = resized.astype(np.float32) / 255.0
        return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...])

    async def infer(self, tensor: np.ndarray) -> List[np.ndarray]:
        """
        Run the session on a preprocessed tensor.

        Raises:
            InferenceError: when the model is not loaded or the run fails
        """
        session = self._session
        if session is None:
            raise InferenceError("Detector model is not loaded")
        try:
            input_name = session.get_inputs()[0].name
            outputs = await asyncio.to_thread(session.run, None, {input_name: tensor})
        except Exception as e:
            raise InferenceError(f"Detector inference failed: {e}") from e
        return [np.asarray(o) for o in outputs]

    def _output_names(self) -> List[str]:
        try:
            return [o.name for o in self._session.get_outputs()]
        except Exception:
            return []

    def decode(self, outputs: Sequence[np.ndarray], image_size: Tuple[int, int]) -> DecodedOutput:
        """
        Turn raw outputs into candidate detections in source-image pixels.

        Args:
            outputs: Session outputs in model order
            image_size: (width, height) of the source image

        Raises:
            InferenceError: when the outputs do not have the family's shape
        """
        try:
            if self.family == "detr":
                return self._decode_detr(outputs, image_size)
            if self.family == "end2end":
                return self._decode_end2end(outputs, image_size)
            return self._decode_yolo(outputs, image_size)
        except (ValueError, IndexError) as e:
            raise InferenceError(f"Unexpected {self.family} output shape: {e}") from e

    def _decode_yolo(self, outputs: Sequence[np.ndarray], image_size: Tuple[int, int]) -> DecodedOutput:
        # [1, 4 + K (+ C), N] -> [N, 4 + K (+ C)]
        preds = np.asarray(outputs[0], dtype=np.float32)
        if preds.ndim != 3:
            raise ValueError(f"expected [1, F, N], got {preds.shape}")
        preds = preds[0].T

        prototypes = None
        coefficients = None
        if self.has_masks:
            prototypes = np.asarray(outputs[1], dtype=np.float32)[0]
            channels = prototypes.shape[0]
            coefficients = preds[:, preds.shape[1] - channels:]
            scores = preds[:, 4:preds.shape[1] - channels]
        else:
            scores = preds[:, 4:]
        if scores.shape[1] < 1:
            raise ValueError(f"no class scores in {preds.shape}")

        boxes = preds[:, :4] / float(self.input_size)
        detections = decode_candidates(
            boxes,
            scores,
            image_size,
            self.confidence_threshold,
            box_format="cxcywh",
            normalized=True,
            coefficients=coefficients,
            class_labels=self.class_labels,
        )
        return DecodedOutput(detections=detections, prototypes=prototypes)

    def _decode_detr(self, outputs: Sequence[np.ndarray], image_size: Tuple[int, int]) -> DecodedOutput:
        names = self._output_names()
        if "logits" in names and "pred_boxes" in names:
            logits = outputs[names.index("logits")]
            boxes = outputs[names.index("pred_boxes")]
        else:
            logits, boxes = outputs[0], outputs[1]
            if np.asarray(logits).shape[-1] == 4 and np.asarray(boxes).shape[-1] != 4:
                logits, boxes = boxes, logits

        logits = np.asarray(logits, dtype=np.float32).reshape(-1, np.asarray(logits).shape[-1])
        boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
        # Trailing column is the "no object" class
        probs = softmax(logits, axis=-1)[:, :-1]
        detections = decode_candidates(
            boxes,
            probs,
            image_size,
            self.confidence_threshold,
            box_format="cxcywh",
            normalized=True,
            class_labels=self.class_labels,
        )
        return DecodedOutput(detections=detections)

    def _decode_end2end(self, outputs: Sequence[np.ndarray], image_size: Tuple[int, int]) -> DecodedOutput:
        # Rows of (x1, y1, x2, y2, score, class) in model-input pixels
        rows = np.asarray(outputs[0], dtype=np.float32).reshape(-1, 6)
        detections = decode_candidates(
            rows[:, :4] / float(self.input_size),
            rows[:, 4],
            image_size,
            self.confidence_threshold,
            class_ids=np.round(rows[:, 5]),
            box_format="xyxy",
            normalized=True,
            class_labels=self.class_labels,
        )
        return DecodedOutput(detections=detections)

    def close(self) -> None:
        self._session = None
