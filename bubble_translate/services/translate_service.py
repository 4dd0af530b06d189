"""
Per-detection translation.

Dispatches recognized text to the provider named in the request settings,
through the translation limiter. Providers are created lazily and reused
per (provider, credentials).
"""

import logging
from collections import OrderedDict
from typing import Callable, Dict, Optional, Protocol, Tuple

from bubble_translate.models.messages import RequestSettings
from bubble_translate.services.limiter import ConcurrencyLimiter

logger = logging.getLogger(__name__)


class TranslationProvider(Protocol):
    name: str

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        ...


# Credentials each provider needs, looked up in RequestSettings.credentials
PROVIDER_CREDENTIALS: Dict[str, Tuple[str, ...]] = {
    "google": ("apiKey",),
    "aliyun": ("accessKeyId", "accessKeySecret"),
    "gemini": ("geminiApiKey",),
}


def _build_google(api_key: str) -> TranslationProvider:
    from bubble_translate.services.google_translate_service import GoogleTranslateService
    return GoogleTranslateService(api_key=api_key)


def _build_aliyun(access_key_id: str, access_key_secret: str) -> TranslationProvider:
    from bubble_translate.services.aliyun_translate_service import AliyunTranslateService
    return AliyunTranslateService(access_key_id=access_key_id, access_key_secret=access_key_secret)


def _build_gemini(api_key: str) -> TranslationProvider:
    from bubble_translate.services.gemini_translate_service import GeminiTranslateService
    return GeminiTranslateService(api_key=api_key)


DEFAULT_PROVIDER_FACTORIES: Dict[str, Callable[..., TranslationProvider]] = {
    "google": _build_google,
    "aliyun": _build_aliyun,
    "gemini": _build_gemini,
}


class TranslationStage:
    """
    Translates the text of one detection at a time.

    Never raises: unknown providers, missing credentials and provider failures
    all return the original text.
    """

    def __init__(
        self,
        limiter: ConcurrencyLimiter,
        provider_factories: Optional[Dict[str, Callable[..., TranslationProvider]]] = None,
        max_providers: int = 16,
    ):
        if max_providers < 1:
            raise ValueError("max_providers must be >= 1")
        self.limiter = limiter
        self.max_providers = max_providers
        self._factories = dict(provider_factories or DEFAULT_PROVIDER_FACTORIES)
        # (provider, credentials) -> client, least recently used first
        self._providers: "OrderedDict[Tuple[str, Tuple[str, ...]], TranslationProvider]" = OrderedDict()

    def _credentials_for(self, provider: str, settings: RequestSettings) -> Optional[Tuple[str, ...]]:
        values = []
        for name in PROVIDER_CREDENTIALS.get(provider, ()):
            value = settings.credential(name)
            if not value:
                return None
            values.append(value)
        return tuple(values)

    def _get_provider(self, provider: str, credentials: Tuple[str, ...]) -> TranslationProvider:
        key = (provider, credentials)
        instance = self._providers.get(key)
        if instance is not None:
            self._providers.move_to_end(key)
            return instance

        logger.info(f"Creating translation provider '{provider}'")
        instance = self._factories[provider](*credentials)
        self._providers[key] = instance
        while len(self._providers) > self.max_providers:
            (evicted, _), _ = self._providers.popitem(last=False)
            logger.info(f"Dropping least recently used '{evicted}' translation provider")
        return instance

    async def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
        provider: str,
        settings: RequestSettings,
        request_id: str = "",
    ) -> str:
        """
        Translate one detection's text.

        Args:
            text: Recognized text
            source_language: Language code or "auto"
            target_language: Language code
            provider: Provider name (google / aliyun / gemini)
            settings: Request settings carrying the credentials
            request_id: Correlation id for log lines

        Returns:
            Translated text, or the input unchanged when translation is skipped or fails
        """
        if not text or not text.strip():
            return text

        if source_language and source_language != "auto" and source_language == target_language:
            return text

        if provider not in self._factories:
            logger.warning(f"[Request {request_id}] Unknown translation provider '{provider}', passing text through")
            return text

        credentials = self._credentials_for(provider, settings)
        if credentials is None:
            logger.info(f"[Request {request_id}] Translation skipped: no credentials for {provider}")
            return text

        try:
            instance = self._get_provider(provider, credentials)
            return await self.limiter.run(
                lambda: instance.translate(text, source_language, target_language)
            )
        except Exception as e:
            logger.warning(f"[Request {request_id}] Translation via {provider} failed: {e}")
            return text
