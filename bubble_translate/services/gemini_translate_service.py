"""
Gemini (google-genai) translation provider.

The model is asked for a JSON object so that stray commentary never leaks
into the translated text.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from bubble_translate.config import get_settings
from bubble_translate.exceptions import TranslationError

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You translate short comic and manga dialogue.\n"
    "Keep the tone and keep it concise so it fits back into the speech bubble.\n"
    "Do not add explanations or notes.\n"
    'Output strictly valid JSON: {"translation": string}\n'
)


def _extract_json(s: str) -> Dict[str, Any]:
    s = (s or "").strip()
    try:
        return json.loads(s)
    except ValueError:
        pass
    i = s.find("{")
    j = s.rfind("}")
    if i >= 0 and j > i:
        try:
            return json.loads(s[i:j + 1])
        except ValueError:
            pass
    raise TranslationError("Gemini returned non-JSON or unparsable JSON")


class GeminiTranslateService:
    """
    Translation through a Gemini model with an API key.

    Usage:
        service = GeminiTranslateService(api_key="...")
        text = await service.translate("안녕하세요", "ko", "en")
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_retries: int = 2,
        client: Optional[Any] = None,
    ):
        if not api_key and client is None:
            raise ValueError("Gemini API key is required")

        try:
            from google import genai  # type: ignore
            from google.genai import types  # type: ignore
        except Exception as e:
            raise RuntimeError("google-genai not installed. pip install google-genai") from e

        self.model = model or get_settings().GEMINI_MODEL
        self.temperature = float(temperature)
        self.max_retries = max(1, int(max_retries))
        self._types = types
        self._client = client if client is not None else genai.Client(api_key=api_key)

    def _build_prompt(self, text: str, source_language: str, target_language: str) -> str:
        source = "the detected language" if not source_language or source_language == "auto" else source_language
        payload = json.dumps({"source": source, "target": target_language, "text": text}, ensure_ascii=False)
        return f"{SYSTEM_PROMPT}\nTranslate from {source} to {target_language}.\n\nINPUT_JSON:\n{payload}\n"

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        """
        Translate one string.

        Raises:
            TranslationError: when every attempt fails or the model returns no translation
        """
        types = self._types
        prompt = self._build_prompt(text, source_language, target_language)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await self._client.aio.models.generate_content(
                    model=self.model,
                    contents=[types.Content(role="user", parts=[types.Part(text=prompt)])],
                    config=types.GenerateContentConfig(
                        temperature=self.temperature,
                        response_mime_type="application/json",
                    ),
                )
                translated = str(_extract_json(resp.text or "").get("translation") or "").strip()
                if not translated:
                    raise TranslationError("Gemini returned an empty translation")
                return translated
            except Exception as e:
                last_error = e
                logger.debug(f"Gemini attempt {attempt}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(0.6 * attempt)

        if isinstance(last_error, TranslationError):
            raise last_error
        raise TranslationError(f"Gemini translation failed: {last_error}") from last_error
