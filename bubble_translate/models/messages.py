"""
Pydantic models for the detection message protocol.

Field names are snake_case in Python and camelCase on the wire.
"""

import uuid
from typing import Dict, List, Literal, NewType, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


RequestId = NewType("RequestId", str)


def new_request_id() -> RequestId:
    return RequestId(str(uuid.uuid4()))


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class RequestSettings(WireModel):
    """
    Per-request pipeline settings.

    Immutable: a settings update never changes a request that is already in flight.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ocr_service: Literal["local", "cloud-vision"] = Field(
        default="local", alias="ocrService", description="OCR provider"
    )
    translation_service: Literal["google", "aliyun", "gemini"] = Field(
        default="google", alias="translationService", description="Translation provider"
    )
    source_language: str = Field(default="auto", alias="sourceLanguage")
    target_language: str = Field(default="en", alias="targetLanguage")
    api_key: Optional[str] = Field(default=None, alias="apiKey", description="Shared cloud API key")
    credentials: Dict[str, str] = Field(
        default_factory=dict, description="Provider credentials (opaque strings)"
    )

    def credential(self, name: str) -> Optional[str]:
        """Look up a credential; `apiKey` falls back to the top-level api_key field."""
        value = self.credentials.get(name)
        if not value and name == "apiKey":
            value = self.api_key
        value = (value or "").strip()
        return value or None


class RawImageData(WireModel):
    """Raw pixel buffer, as produced by a canvas getImageData() call."""

    data: str = Field(..., description="Base64-encoded pixel bytes, row-major")
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    channels: Literal[1, 3, 4] = Field(default=4)


ImagePayload = Union[str, RawImageData]


class DetectObjectsMessage(WireModel):
    action: Literal["detectObjects"] = "detectObjects"
    image_data: ImagePayload = Field(
        ..., alias="imageData", description="Encoded image (base64 / data URL) or raw pixel buffer"
    )
    request_id: Optional[str] = Field(default=None, alias="requestId")
    settings: Optional[RequestSettings] = None

    # Cross-boundary routing metadata (WebSocket callers)
    tab_id: Optional[int] = Field(default=None, alias="tabId")
    frame_id: Optional[int] = Field(default=None, alias="frameId")


class LineBoxPayload(WireModel):
    x1: float
    y1: float
    x2: float
    y2: float


class DetectionPayload(WireModel):
    x1: float
    y1: float
    x2: float
    y2: float
    confidence: float
    class_index: int = Field(alias="classIndex")
    class_label: Optional[str] = Field(default=None, alias="classLabel")
    text: str = ""
    translated_text: str = Field(default="", alias="translatedText")
    font_size: Optional[float] = Field(default=None, alias="fontSize")
    mask: Optional[str] = Field(default=None, description="PNG data URL")
    boxes: Optional[List[LineBoxPayload]] = None


class DetectionResultsMessage(WireModel):
    action: Literal["detectionResults"] = "detectionResults"
    request_id: str = Field(alias="requestId")
    results: Optional[List[DetectionPayload]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class UpdateSettingsMessage(WireModel):
    action: Literal["updateSettings"] = "updateSettings"
    settings: RequestSettings


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="ok")
    version: str = Field(default="0.1.0")
