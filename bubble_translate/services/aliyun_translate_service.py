"""
Aliyun Machine Translation provider - text translation
API docs: https://help.aliyun.com/zh/machine-translation/developer-reference/api-alimt-2018-10-12-translategeneral

The SDK client is synchronous; calls run in a worker thread.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from alibabacloud_alimt20181012.client import Client as AlimtClient
from alibabacloud_alimt20181012 import models as alimt_models
from alibabacloud_tea_openapi import models as open_api_models
from alibabacloud_tea_util import models as util_models

from bubble_translate.config import get_settings
from bubble_translate.exceptions import TranslationError

logger = logging.getLogger(__name__)


class AliyunTranslateService:
    """
    Aliyun Machine Translation, general scene.

    Credentials come from the request (accessKeyId / accessKeySecret);
    region and endpoint from settings (ALIYUN_REGION_ID, ALIYUN_MT_ENDPOINT).
    """

    name = "aliyun"

    # Translation scene
    SCENE_GENERAL = "general"

    def __init__(
        self,
        access_key_id: str,
        access_key_secret: str,
        region_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        """
        Args:
            access_key_id: Aliyun Access Key ID
            access_key_secret: Aliyun Access Key Secret
            region_id: Region id (defaults to ALIYUN_REGION_ID)
            endpoint: API endpoint (defaults to ALIYUN_MT_ENDPOINT)
            client: Pre-built SDK client (tests)
        """
        settings = get_settings()
        if not access_key_id or not access_key_secret:
            raise ValueError("Aliyun access key id and secret are required")

        self.access_key_id = access_key_id
        self.access_key_secret = access_key_secret
        self.region_id = region_id or settings.ALIYUN_REGION_ID
        self.endpoint = endpoint or settings.ALIYUN_MT_ENDPOINT
        self._client = client

    @property
    def client(self) -> AlimtClient:
        """Get or create the SDK client."""
        if self._client is None:
            config = open_api_models.Config(
                access_key_id=self.access_key_id,
                access_key_secret=self.access_key_secret,
                region_id=self.region_id,
                endpoint=self.endpoint,
            )
            self._client = AlimtClient(config)
        return self._client

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        return await asyncio.to_thread(self._translate_sync, text, source_language, target_language)

    def _translate_sync(self, text: str, source_language: str, target_language: str) -> str:
        request = alimt_models.TranslateGeneralRequest(
            format_type="text",
            source_language=source_language or "auto",
            target_language=target_language,
            source_text=text,
            scene=self.SCENE_GENERAL,
        )
        runtime = util_models.RuntimeOptions(
            connect_timeout=10000,
            read_timeout=30000,
        )

        logger.debug(
            f"Aliyun TranslateGeneral: {source_language} -> {target_language}, "
            f"region_id: {self.region_id}, endpoint: {self.endpoint}"
        )

        try:
            response = self.client.translate_general_with_options(request, runtime)
        except Exception as e:
            error_msg = getattr(e, "message", None) or str(e)
            raise TranslationError(f"Aliyun TranslateGeneral failed: {error_msg}") from e

        body = getattr(response, "body", None)
        if body is None:
            raise TranslationError("Aliyun returned an empty response")

        code = str(body.code)
        if code != "200":
            raise TranslationError(f"Aliyun error code {code}: {body.message}")
        if body.data is None or body.data.translated is None:
            raise TranslationError(f"Aliyun response without data: {self._response_to_dict(response)}")

        return str(body.data.translated)

    def _response_to_dict(self, response: Any) -> Dict[str, Any]:
        try:
            if hasattr(response, "to_map"):
                return response.to_map()
            return {}
        except Exception:
            return {}
