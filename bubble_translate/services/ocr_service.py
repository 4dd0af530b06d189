"""
Text-recognition engines and the per-language engine pool.

Engines are opaque: they take a (preprocessed) region image and return
blocks -> lines -> words with confidences on a 0..100 scale.
"""

import asyncio
import base64
import contextlib
import inspect
import io
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

import cv2
import httpx
import numpy as np

from bubble_translate.config import get_settings
from bubble_translate.exceptions import OCRError
from bubble_translate.models.detection import Box

logger = logging.getLogger(__name__)


# -----------------------------
# Result structures
# -----------------------------
@dataclass
class OCRWord:
    text: str
    confidence: float
    bbox: Optional[Box] = None


@dataclass
class OCRLine:
    text: str
    confidence: float
    bbox: Box
    words: List[OCRWord] = field(default_factory=list)


@dataclass
class OCRBlock:
    confidence: float
    lines: List[OCRLine] = field(default_factory=list)


@dataclass
class OCRResult:
    blocks: List[OCRBlock] = field(default_factory=list)

    @property
    def lines(self) -> List[OCRLine]:
        return [line for block in self.blocks for line in block.lines]


def poly_to_box(poly: Any) -> Box:
    pts = np.asarray(poly, dtype=np.float32).reshape(-1, 2)
    return Box(
        x1=float(pts[:, 0].min()),
        y1=float(pts[:, 1].min()),
        x2=float(pts[:, 0].max()),
        y2=float(pts[:, 1].max()),
    )


def line_from_token(text: str, score: float, poly: Any) -> OCRLine:
    """Single-line detectors report whole lines; words inherit the line score."""
    box = poly_to_box(poly)
    confidence = float(score) * 100.0
    words = [OCRWord(text=w, confidence=confidence, bbox=box) for w in text.split()]
    return OCRLine(text=text, confidence=confidence, bbox=box, words=words)


# -----------------------------
# Engines
# -----------------------------
class RecognitionEngine(Protocol):
    language: str

    def recognize(self, image: np.ndarray) -> OCRResult:
        ...

    def close(self) -> None:
        ...


class RapidOCREngine:
    """Local ONNX OCR (rapidocr). Models are language-agnostic (CJK + Latin)."""

    def __init__(self, language: str = "en") -> None:
        try:
            from rapidocr_onnxruntime import RapidOCR  # type: ignore
        except Exception as e:
            raise RuntimeError("rapidocr-onnxruntime not installed. pip install rapidocr-onnxruntime") from e
        self.language = language
        self._ocr = RapidOCR()

    def recognize(self, image: np.ndarray) -> OCRResult:
        rgb = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB) if image.ndim == 2 else image
        res, _ = self._ocr(rgb)
        result = OCRResult()
        if not res:
            return result
        for item in res:
            if len(item) < 3:
                continue
            text = str(item[1]) if item[1] is not None else ""
            score = float(item[2]) if item[2] is not None else 0.0
            line = line_from_token(text, score, item[0])
            result.blocks.append(OCRBlock(confidence=line.confidence, lines=[line]))
        return result

    def close(self) -> None:
        self._ocr = None


# Request language code -> PaddleOCR model name
PADDLE_LANGS = {
    "zh": "ch",
    "zh-CN": "ch",
    "zh-TW": "chinese_cht",
    "ja": "japan",
    "ko": "korean",
    "en": "en",
    "fr": "fr",
    "de": "german",
    "es": "es",
    "it": "it",
    "pt": "pt",
    "ru": "ru",
}


class PaddleOCREngine:
    """Local PaddleOCR with one model set per language."""

    def __init__(self, language: str = "en") -> None:
        try:
            from paddleocr import PaddleOCR  # type: ignore
        except Exception as e:
            raise RuntimeError("paddleocr not installed. pip install paddleocr") from e

        self.language = language
        sig = inspect.signature(PaddleOCR.__init__)
        kwargs: Dict[str, Any] = {}
        # Keyword names differ between PaddleOCR releases
        for k, v in [
            ("lang", PADDLE_LANGS.get(language, language)),
            ("use_doc_orientation_classify", False),
            ("use_doc_unwarping", False),
            ("use_textline_orientation", False),
            ("use_angle_cls", False),
            ("show_log", False),
        ]:
            if k in sig.parameters:
                kwargs[k] = v

        buf_out, buf_err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(buf_out), contextlib.redirect_stderr(buf_err):
            self._ocr = PaddleOCR(**kwargs)

    def recognize(self, image: np.ndarray) -> OCRResult:
        bgr = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR) if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        raw = self._ocr.ocr(bgr)
        inner = raw[0] if (isinstance(raw, list) and len(raw) == 1 and isinstance(raw[0], list)) else raw

        result = OCRResult()
        if not isinstance(inner, list):
            return result
        for item in inner:
            if not isinstance(item, (list, tuple)) or len(item) < 2 or not isinstance(item[1], (list, tuple)):
                continue
            text = str(item[1][0])
            score = float(item[1][1]) if len(item[1]) > 1 else 1.0
            line = line_from_token(text, score, item[0])
            result.blocks.append(OCRBlock(confidence=line.confidence, lines=[line]))
        return result

    def close(self) -> None:
        self._ocr = None


def _vertices_to_box(bounding: Optional[dict]) -> Optional[Box]:
    vertices = (bounding or {}).get("vertices") or []
    if not vertices:
        return None
    xs = [float(v.get("x", 0)) for v in vertices]
    ys = [float(v.get("y", 0)) for v in vertices]
    return Box(x1=min(xs), y1=min(ys), x2=max(xs), y2=max(ys))


class CloudVisionEngine:
    """
    Google Cloud Vision DOCUMENT_TEXT_DETECTION.

    Vision reports pages -> blocks -> paragraphs -> words; each paragraph is
    treated as one line.
    """

    def __init__(
        self,
        api_key: str,
        language: str = "auto",
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key
        self.language = language
        self.api_url = api_url or settings.CLOUD_VISION_URL
        self.timeout = timeout or settings.OCR_HTTP_TIMEOUT
        self._transport = transport

    def _build_request(self, image: np.ndarray) -> dict:
        ok, encoded = cv2.imencode(".png", image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
        if not ok:
            raise OCRError("Could not encode region as PNG")
        request: Dict[str, Any] = {
            "image": {"content": base64.b64encode(encoded.tobytes()).decode("utf-8")},
            "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
        }
        if self.language and self.language != "auto":
            request["imageContext"] = {"languageHints": [self.language]}
        return {"requests": [request]}

    def recognize(self, image: np.ndarray) -> OCRResult:
        payload = self._build_request(image)
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.api_url, params={"key": self.api_key}, json=payload)
        except httpx.TimeoutException as e:
            raise OCRError(f"Cloud Vision timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise OCRError(f"Cloud Vision request error: {e}") from e

        if response.status_code != 200:
            raise OCRError(f"Cloud Vision HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
            first = (data.get("responses") or [{}])[0]
        except (ValueError, AttributeError) as e:
            raise OCRError(f"Malformed Cloud Vision response: {e}") from e
        if "error" in first:
            raise OCRError(f"Cloud Vision error: {first['error'].get('message', first['error'])}")

        return self._parse(first.get("fullTextAnnotation") or {})

    def _parse(self, annotation: dict) -> OCRResult:
        result = OCRResult()
        for page in annotation.get("pages", []):
            for block in page.get("blocks", []):
                ocr_block = OCRBlock(confidence=float(block.get("confidence", 0.0)) * 100.0)
                for paragraph in block.get("paragraphs", []):
                    words: List[OCRWord] = []
                    for word in paragraph.get("words", []):
                        text = "".join(s.get("text", "") for s in word.get("symbols", []))
                        words.append(
                            OCRWord(
                                text=text,
                                confidence=float(word.get("confidence", 0.0)) * 100.0,
                                bbox=_vertices_to_box(word.get("boundingBox")),
                            )
                        )
                    bbox = _vertices_to_box(paragraph.get("boundingBox"))
                    if bbox is None:
                        continue
                    ocr_block.lines.append(
                        OCRLine(
                            text=" ".join(w.text for w in words),
                            confidence=float(paragraph.get("confidence", 0.0)) * 100.0,
                            bbox=bbox,
                            words=words,
                        )
                    )
                result.blocks.append(ocr_block)
        return result

    def close(self) -> None:
        pass


def build_local_engine(language: str) -> RecognitionEngine:
    """Create the configured local engine for a language."""
    backend = get_settings().LOCAL_OCR_BACKEND
    if backend == "paddle":
        return PaddleOCREngine(language=language)
    return RapidOCREngine(language=language)


# -----------------------------
# Engine pool
# -----------------------------
class RecognitionEnginePool:
    """
    Lazily creates one engine per language and reuses it across requests.

    Engines for different languages coexist. Construction of a language's
    engine happens once even if several requests ask for it at the same time.
    With max_engines set, the least recently used engine leaves the pool to
    make room; an engine that is still leased is closed only when its last
    lease ends.
    """

    def __init__(
        self,
        engine_factory: Callable[[str], RecognitionEngine] = build_local_engine,
        max_engines: Optional[int] = None,
    ):
        if max_engines is not None and max_engines < 1:
            raise ValueError("max_engines must be >= 1")
        self._factory = engine_factory
        self._max_engines = max_engines
        self._engines: "OrderedDict[str, RecognitionEngine]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}
        # id(engine) -> active lease count
        self._leases: Dict[int, int] = {}
        # Evicted while leased: id(engine) -> (language, engine)
        self._retired: Dict[int, Tuple[str, RecognitionEngine]] = {}

    @property
    def languages(self) -> List[str]:
        return list(self._engines.keys())

    @property
    def retired_count(self) -> int:
        return len(self._retired)

    async def acquire(self, language: str) -> RecognitionEngine:
        """
        Get the engine for a language, creating it on first use.

        The handle is not protected from eviction; use lease() while
        running recognition on it.

        Args:
            language: Language code

        Returns:
            Live engine handle
        """
        engine = self._engines.get(language)
        if engine is not None:
            self._engines.move_to_end(language)
            return engine

        lock = self._locks.setdefault(language, asyncio.Lock())
        async with lock:
            engine = self._engines.get(language)
            if engine is not None:
                self._engines.move_to_end(language)
                return engine

            logger.info(f"Creating recognition engine for language '{language}'")
            engine = await asyncio.to_thread(self._factory, language)
            self._engines[language] = engine
            self._evict()
            return engine

    @contextlib.asynccontextmanager
    async def lease(self, language: str) -> AsyncIterator[RecognitionEngine]:
        """Hold a language's engine open for the duration of the block."""
        engine = await self.acquire(language)
        key = id(engine)
        self._leases[key] = self._leases.get(key, 0) + 1
        try:
            yield engine
        finally:
            self._release(key)

    def _release(self, key: int) -> None:
        remaining = self._leases.get(key, 0) - 1
        if remaining > 0:
            self._leases[key] = remaining
            return
        self._leases.pop(key, None)
        retired = self._retired.pop(key, None)
        if retired is not None:
            language, engine = retired
            logger.info(f"Closing retired recognition engine for language '{language}'")
            self._close_engine(language, engine)

    def _evict(self) -> None:
        if self._max_engines is None:
            return
        while len(self._engines) > self._max_engines:
            language, engine = self._engines.popitem(last=False)
            if self._leases.get(id(engine)):
                logger.info(f"Retiring recognition engine for language '{language}' until its leases end")
                self._retired[id(engine)] = (language, engine)
                continue
            logger.info(f"Evicting recognition engine for language '{language}'")
            self._close_engine(language, engine)

    @staticmethod
    def _close_engine(language: str, engine: RecognitionEngine) -> None:
        try:
            engine.close()
        except Exception as e:
            logger.warning(f"Error closing engine for '{language}': {e}")

    async def close(self) -> None:
        """Tear down every engine, retired ones included."""
        while self._engines:
            language, engine = self._engines.popitem(last=False)
            self._close_engine(language, engine)
        for language, engine in self._retired.values():
            self._close_engine(language, engine)
        self._retired.clear()
        self._leases.clear()
        self._locks.clear()
