"""Tests for the per-detection recognition stage."""
import asyncio
import threading
import time

import numpy as np
import pytest

from bubble_translate.models.detection import Box, Detection
from bubble_translate.models.messages import RequestSettings
from bubble_translate.services.limiter import ConcurrencyLimiter
from bubble_translate.services.ocr_service import RecognitionEnginePool
from bubble_translate.services import recognition_service
from bubble_translate.services.recognition_service import RegionRecognitionStage, normalize_text
from bubble_translate.utils.image_utils import preprocess_for_ocr
from tests.conftest import FakeEngine, make_line, make_result


def build_stage(engine, factor=2.0, cloud_engine_factory=None):
    pool = RecognitionEnginePool(engine_factory=lambda language: engine)
    return RegionRecognitionStage(
        pool=pool,
        limiter=ConcurrencyLimiter(2, name="ocr"),
        upscale_factor=factor,
        cloud_engine_factory=cloud_engine_factory,
    )


def test_normalize_text():
    assert normalize_text(["WHAT ARE YOU", "DO-", "ING  HERE?"]) == "WHAT ARE YOU DOING HERE?"
    assert normalize_text(["", "  "]) == ""


class TestRegionRecognitionStage:

    def test_confident_lines_become_text(self, synthetic_image, detection):
        result = make_result(
            make_line("HELLO", 90.0, Box(10, 10, 110, 30)),
            make_line("THERE", 80.0, Box(10, 40, 110, 70)),
        )
        engine = FakeEngine(result=result)
        stage = build_stage(engine, factor=2.0)

        out = asyncio.run(stage.recognize(synthetic_image, detection, RequestSettings()))

        assert out.text == "HELLO THERE"
        # mean of 20 and 30, divided by the upscale factor
        assert out.font_size == pytest.approx(12.5)
        assert out.line_boxes[0] == Box(50 + 5, 30 + 5, 50 + 55, 30 + 15)
        # crop is 100x40, upscaled by 2 and binarized
        assert engine.calls[0].shape == (80, 200)
        assert engine.calls[0].dtype == np.uint8

    def test_no_confident_line_falls_back(self, synthetic_image, detection):
        result = make_result(
            make_line("noise", 30.0, Box(0, 0, 10, 10)),
            make_line("more noise", 50.0, Box(0, 10, 10, 20)),
        )
        stage = build_stage(FakeEngine(result=result))

        out = asyncio.run(stage.recognize(synthetic_image, detection, RequestSettings()))

        assert out.text == ""
        assert out.font_size == pytest.approx(40.0 / 2)
        assert out.line_boxes == []

    def test_low_confidence_block_and_words_dropped(self, synthetic_image, detection):
        weak_block = make_result(make_line("GHOST", 99.0, Box(0, 0, 10, 10)), block_confidence=10.0)
        strong = make_result(make_line("KEEP me", 90.0, Box(0, 0, 20, 10), word_confidence=95.0))
        strong.blocks[0].lines[0].words[1].confidence = 5.0
        strong.blocks = weak_block.blocks + strong.blocks
        stage = build_stage(FakeEngine(result=strong))

        out = asyncio.run(stage.recognize(synthetic_image, detection, RequestSettings()))

        assert out.text == "KEEP"

    def test_engine_failure_never_raises(self, synthetic_image, detection):
        stage = build_stage(FakeEngine(error=RuntimeError("engine crashed")))

        out = asyncio.run(stage.recognize(synthetic_image, detection, RequestSettings()))

        assert out.text == ""
        assert out.font_size == pytest.approx(40.0)

    def test_empty_crop(self, synthetic_image):
        outside = Detection(box=Box(500, 500, 600, 550), confidence=0.9, class_index=1)
        engine = FakeEngine()
        stage = build_stage(engine)

        out = asyncio.run(stage.recognize(synthetic_image, outside, RequestSettings()))

        assert out.text == ""
        assert out.font_size == pytest.approx(50.0)
        assert engine.calls == []

    def test_auto_language_uses_default_engine(self, synthetic_image, detection):
        languages = []

        def factory(language):
            languages.append(language)
            return FakeEngine(language)

        stage = RegionRecognitionStage(
            pool=RecognitionEnginePool(engine_factory=factory),
            limiter=ConcurrencyLimiter(1),
            default_language="ja",
        )
        asyncio.run(stage.recognize(synthetic_image, detection, RequestSettings(source_language="auto")))
        asyncio.run(stage.recognize(synthetic_image, detection, RequestSettings(source_language="ko")))

        assert languages == ["ja", "ko"]

    def test_cloud_vision_without_key_is_skipped(self, synthetic_image, detection):
        created = []
        stage = build_stage(
            FakeEngine(),
            cloud_engine_factory=lambda key, language: created.append(key) or FakeEngine(),
        )

        out = asyncio.run(
            stage.recognize(synthetic_image, detection, RequestSettings(ocr_service="cloud-vision"))
        )

        assert out.text == ""
        assert created == []

    def test_cloud_vision_with_key(self, synthetic_image, detection):
        cloud = FakeEngine(result=make_result(make_line("CLOUD", 90.0, Box(0, 0, 40, 20))))
        stage = build_stage(FakeEngine(), cloud_engine_factory=lambda key, language: cloud)
        settings = RequestSettings(ocr_service="cloud-vision", api_key="vision-key")

        out = asyncio.run(stage.recognize(synthetic_image, detection, settings))

        assert out.text == "CLOUD"
        assert len(cloud.calls) == 1


class TestRecognitionUnderLoad:

    def test_evicted_engine_finishes_running_recognition(self, synthetic_image, detection):
        class SlowEngine(FakeEngine):
            def recognize(self, image):
                time.sleep(0.2)
                if self.closed:
                    raise RuntimeError("engine closed while recognizing")
                return super().recognize(image)

        engines = {}

        def factory(language):
            engines[language] = SlowEngine(
                language, result=make_result(make_line("HELLO", 90.0, Box(0, 0, 40, 20)))
            )
            return engines[language]

        pool = RecognitionEnginePool(engine_factory=factory, max_engines=1)
        stage = RegionRecognitionStage(pool=pool, limiter=ConcurrencyLimiter(2), upscale_factor=1.0)

        async def later(settings):
            await asyncio.sleep(0.05)
            return await stage.recognize(synthetic_image, detection, settings)

        async def scenario():
            return await asyncio.gather(
                stage.recognize(synthetic_image, detection, RequestSettings(source_language="en")),
                later(RequestSettings(source_language="ja")),
            )

        english, japanese = asyncio.run(scenario())

        assert english.text == "HELLO"
        assert japanese.text == "HELLO"
        assert pool.languages == ["ja"]
        assert engines["en"].closed
        assert not engines["ja"].closed
        assert pool.retired_count == 0

    def test_region_preparation_is_bounded_by_limiter(self, synthetic_image, monkeypatch):
        live = {"now": 0, "peak": 0}
        lock = threading.Lock()

        def counting_preprocess(image, hard):
            with lock:
                live["now"] += 1
                live["peak"] = max(live["peak"], live["now"])
            return preprocess_for_ocr(image, hard)

        class ReleasingEngine(FakeEngine):
            def recognize(self, image):
                time.sleep(0.005)
                with lock:
                    live["now"] -= 1
                return super().recognize(image)

        monkeypatch.setattr(recognition_service, "preprocess_for_ocr", counting_preprocess)
        engine = ReleasingEngine()
        stage = RegionRecognitionStage(
            pool=RecognitionEnginePool(engine_factory=lambda language: engine),
            limiter=ConcurrencyLimiter(1),
            upscale_factor=3.0,
        )
        detections = [Detection(box=Box(0, 0, 200, 100), confidence=0.9, class_index=1) for _ in range(20)]

        async def scenario():
            await asyncio.gather(*(stage.recognize(synthetic_image, d, RequestSettings()) for d in detections))

        asyncio.run(scenario())

        assert live["peak"] == 1
        assert len(engine.calls) == 20
