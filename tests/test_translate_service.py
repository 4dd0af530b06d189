"""Tests for the translation stage and its providers."""
import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from bubble_translate.exceptions import TranslationError
from bubble_translate.models.messages import RequestSettings
from bubble_translate.services.aliyun_translate_service import AliyunTranslateService
from bubble_translate.services.gemini_translate_service import GeminiTranslateService
from bubble_translate.services.google_translate_service import GoogleTranslateService
from bubble_translate.services.limiter import ConcurrencyLimiter
from bubble_translate.services.translate_service import TranslationStage
from tests.conftest import FakeProvider


def build_stage(provider):
    created = []

    def factory(*credentials):
        created.append(credentials)
        return provider

    stage = TranslationStage(
        limiter=ConcurrencyLimiter(2, name="translate"),
        provider_factories={"google": factory, "aliyun": factory, "gemini": factory},
    )
    return stage, created


class TestTranslationStage:

    def test_same_language_passes_through(self):
        provider = FakeProvider()
        stage, created = build_stage(provider)
        settings = RequestSettings(api_key="key")

        out = asyncio.run(stage.translate("hello", "en", "en", "google", settings))

        assert out == "hello"
        assert provider.calls == []
        assert created == []

    def test_auto_source_is_translated(self):
        provider = FakeProvider()
        stage, _ = build_stage(provider)

        out = asyncio.run(stage.translate("hello", "auto", "auto", "google", RequestSettings(api_key="key")))

        assert out == "HELLO"

    def test_blank_text_passes_through(self):
        provider = FakeProvider()
        stage, _ = build_stage(provider)

        assert asyncio.run(stage.translate("   ", "ja", "en", "google", RequestSettings(api_key="key"))) == "   "
        assert provider.calls == []

    def test_missing_credentials_pass_through(self):
        provider = FakeProvider()
        stage, _ = build_stage(provider)

        assert asyncio.run(stage.translate("hola", "es", "en", "google", RequestSettings())) == "hola"
        aliyun = RequestSettings(credentials={"accessKeyId": "id"})
        assert asyncio.run(stage.translate("hola", "es", "en", "aliyun", aliyun)) == "hola"
        assert provider.calls == []

    def test_unknown_provider_passes_through(self):
        provider = FakeProvider()
        stage, _ = build_stage(provider)

        assert asyncio.run(stage.translate("hola", "es", "en", "deepl", RequestSettings(api_key="key"))) == "hola"

    def test_provider_failure_returns_original(self):
        provider = FakeProvider(error=TranslationError("quota exceeded"))
        stage, _ = build_stage(provider)

        out = asyncio.run(stage.translate("hola", "es", "en", "google", RequestSettings(api_key="key")))

        assert out == "hola"
        assert len(provider.calls) == 1

    def test_providers_cached_per_credentials(self):
        provider = FakeProvider()
        stage, created = build_stage(provider)

        async def scenario():
            await stage.translate("a", "ja", "en", "google", RequestSettings(api_key="k1"))
            await stage.translate("b", "ja", "en", "google", RequestSettings(api_key="k1"))
            await stage.translate("c", "ja", "en", "google", RequestSettings(api_key="k2"))
            await stage.translate(
                "d", "ja", "en", "aliyun",
                RequestSettings(credentials={"accessKeyId": "id", "accessKeySecret": "secret"}),
            )

        asyncio.run(scenario())

        assert created == [("k1",), ("k2",), ("id", "secret")]
        assert [c[0] for c in provider.calls] == ["a", "b", "c", "d"]

    def test_provider_cache_is_bounded(self):
        created = []

        def factory(*credentials):
            created.append(credentials)
            return FakeProvider()

        stage = TranslationStage(
            limiter=ConcurrencyLimiter(2, name="translate"),
            provider_factories={"google": factory},
            max_providers=2,
        )

        async def scenario():
            for key in ["k1", "k2", "k1", "k3", "k1", "k2"]:
                await stage.translate("x", "ja", "en", "google", RequestSettings(api_key=key))

        asyncio.run(scenario())

        # k2 was least recently used when k3 arrived, so it is built again
        assert created == [("k1",), ("k2",), ("k3",), ("k2",)]

    def test_invalid_max_providers(self):
        with pytest.raises(ValueError):
            TranslationStage(limiter=ConcurrencyLimiter(1), max_providers=0)


class TestGoogleTranslateService:

    def test_successful_translation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.url.params.get("key")
            seen["body"] = json.loads(request.read())
            return httpx.Response(200, json={"data": {"translations": [{"translatedText": "Hello"}]}})

        service = GoogleTranslateService(api_key="g-key", transport=httpx.MockTransport(handler))
        out = asyncio.run(service.translate("こんにちは", "auto", "en"))

        assert out == "Hello"
        assert seen["key"] == "g-key"
        assert seen["body"] == {"q": "こんにちは", "target": "en", "format": "text"}

    def test_explicit_source_is_sent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.read())
            return httpx.Response(200, json={"data": {"translations": [{"translatedText": "Hi"}]}})

        service = GoogleTranslateService(api_key="k", transport=httpx.MockTransport(handler))
        asyncio.run(service.translate("Hola", "es", "en"))

        assert seen["body"]["source"] == "es"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="boom"),
            httpx.Response(200, json={"data": {}}),
            httpx.Response(200, text="not json"),
        ],
    )
    def test_bad_responses_raise(self, response):
        service = GoogleTranslateService(api_key="k", transport=httpx.MockTransport(lambda request: response))
        with pytest.raises(TranslationError):
            asyncio.run(service.translate("x", "ja", "en"))

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = GoogleTranslateService(api_key="k", transport=httpx.MockTransport(handler))
        with pytest.raises(TranslationError):
            asyncio.run(service.translate("x", "ja", "en"))


class TestAliyunTranslateService:

    def test_requires_keys(self):
        with pytest.raises(ValueError):
            AliyunTranslateService(access_key_id="", access_key_secret="secret")

    def test_successful_translation(self):
        client = Mock()
        client.translate_general_with_options.return_value = SimpleNamespace(
            body=SimpleNamespace(code=200, message="OK", data=SimpleNamespace(translated="Hello"))
        )
        service = AliyunTranslateService(access_key_id="id", access_key_secret="secret", client=client)

        out = asyncio.run(service.translate("你好", "zh", "en"))

        assert out == "Hello"
        request = client.translate_general_with_options.call_args[0][0]
        assert request.source_text == "你好"
        assert request.target_language == "en"

    def test_error_code_raises(self):
        client = Mock()
        client.translate_general_with_options.return_value = SimpleNamespace(
            body=SimpleNamespace(code="InvalidAccessKeyId", message="bad key", data=None)
        )
        service = AliyunTranslateService(access_key_id="id", access_key_secret="secret", client=client)

        with pytest.raises(TranslationError, match="bad key"):
            asyncio.run(service.translate("你好", "zh", "en"))

    def test_sdk_exception_raises(self):
        client = Mock()
        client.translate_general_with_options.side_effect = RuntimeError("throttled")
        service = AliyunTranslateService(access_key_id="id", access_key_secret="secret", client=client)

        with pytest.raises(TranslationError, match="throttled"):
            asyncio.run(service.translate("你好", "zh", "en"))


class TestGeminiTranslateService:

    def build(self, *responses):
        client = Mock()
        client.aio.models.generate_content = AsyncMock(side_effect=list(responses))
        return GeminiTranslateService(api_key="gm-key", max_retries=2, client=client), client

    def test_json_translation(self):
        service, client = self.build(SimpleNamespace(text='{"translation": "Good morning"}'))

        out = asyncio.run(service.translate("おはよう", "ja", "en"))

        assert out == "Good morning"
        kwargs = client.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == service.model

    def test_retries_then_succeeds(self):
        service, client = self.build(
            RuntimeError("503"),
            SimpleNamespace(text='Sure: {"translation": "Hi"}'),
        )

        assert asyncio.run(service.translate("やあ", "ja", "en")) == "Hi"
        assert client.aio.models.generate_content.await_count == 2

    def test_empty_translation_raises(self):
        service, _ = self.build(
            SimpleNamespace(text='{"translation": ""}'),
            SimpleNamespace(text="no json here"),
        )

        with pytest.raises(TranslationError):
            asyncio.run(service.translate("やあ", "ja", "en"))
