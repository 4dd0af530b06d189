"""
Google Cloud Translation (v2 REST) provider.

Endpoint: https://translation.googleapis.com/language/translate/v2
Authenticated with an API key passed as the `key` query parameter.
"""

import logging
from typing import Optional

import httpx

from bubble_translate.config import get_settings
from bubble_translate.exceptions import TranslationError

logger = logging.getLogger(__name__)


class GoogleTranslateService:
    """
    Text translation through the Google Cloud Translation v2 API.

    Usage:
        service = GoogleTranslateService(api_key="...")
        text = await service.translate("こんにちは", "auto", "en")
    """

    name = "google"

    def __init__(
        self,
        api_key: str,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Google Cloud API key
            api_url: Endpoint override (defaults to GOOGLE_TRANSLATE_URL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        settings = get_settings()
        self.api_key = api_key
        self.api_url = api_url or settings.GOOGLE_TRANSLATE_URL
        self.timeout = timeout or settings.TRANSLATE_TIMEOUT
        self._transport = transport

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        """
        Translate one string.

        Args:
            text: Source text
            source_language: Language code or "auto" (lets Google detect it)
            target_language: Language code

        Returns:
            Translated text

        Raises:
            TranslationError: on timeouts, transport errors, non-200 status or malformed payloads
        """
        body = {"q": text, "target": target_language, "format": "text"}
        if source_language and source_language != "auto":
            body["source"] = source_language

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, params={"key": self.api_key}, json=body)
        except httpx.TimeoutException as e:
            raise TranslationError(f"Google Translate timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise TranslationError(f"Google Translate request error: {e}") from e

        if response.status_code != 200:
            raise TranslationError(f"Google Translate HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
            translated = data["data"]["translations"][0]["translatedText"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TranslationError(f"Malformed Google Translate response: {e}") from e

        logger.debug(f"Google Translate {source_language} -> {target_language}: {len(text)} chars")
        return str(translated)
