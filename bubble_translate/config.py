"""
Configuration management using pydantic-settings.
Loads from environment variables and .env file.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)


def _split_csv(v: str) -> List[str]:
    return [item.strip() for item in v.split(",") if item.strip()]


class DetectorConfig(BaseSettings):
    """
    Detection / recognition / translation pipeline settings.

    These settings can be overridden with environment variables.
    """
    # API settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Bubble Translate API"
    VERSION: str = "0.1.0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TO_CONSOLE: bool = True
    LOG_MAX_BYTES: int = 20 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 10
    LOG_BACKUP_DAYS: int = 14
    LOG_QUIET_LOGGERS: str = "httpx,httpcore,uvicorn.access,onnxruntime,RapidOCR,ppocr"

    # CORS settings (comma-separated string)
    BACKEND_CORS_ORIGINS: str = "*"

    # Detector model
    MODEL_PATH: str = "models/comic-bubble-detector.onnx"
    MODEL_FAMILY: str = "yolo"  # yolo / yolo-seg / detr / end2end
    MODEL_INPUT_SIZE: int = 640
    MODEL_NUM_THREADS: int = 1
    MODEL_DEVICE: str = "auto"  # auto / cpu / cuda
    PRELOAD_MODEL: bool = False

    # Decoding
    CONFIDENCE_THRESHOLD: float = 0.5
    IOU_THRESHOLD: float = 0.45
    CLASS_AWARE_NMS: bool = False
    MASK_THRESHOLD: float = 0.5
    MASK_INVERT: bool = False
    CLASS_LABELS: str = "background,bubble,text_free"  # comma-separated, index = class id
    BUBBLE_CLASSES: str = "1"  # comma-separated class ids that get hard thresholding

    # Concurrency caps
    OCR_CONCURRENCY: int = 3
    TRANSLATE_CONCURRENCY: int = 5

    # OCR Configuration
    LOCAL_OCR_BACKEND: str = "rapid"  # rapid / paddle
    OCR_DEFAULT_LANGUAGE: str = "en"
    OCR_MAX_ENGINES: Optional[int] = 4
    OCR_UPSCALE_FACTOR: float = 3.0
    OCR_MIN_BLOCK_CONFIDENCE: float = 40.0
    OCR_MIN_LINE_CONFIDENCE: float = 60.0
    OCR_MIN_WORD_CONFIDENCE: float = 20.0
    CLOUD_VISION_URL: str = "https://vision.googleapis.com/v1/images:annotate"
    OCR_HTTP_TIMEOUT: float = 30.0

    # Translation Configuration
    GOOGLE_TRANSLATE_URL: str = "https://translation.googleapis.com/language/translate/v2"
    TRANSLATE_TIMEOUT: float = 30.0
    TRANSLATE_MAX_PROVIDERS: int = 16
    ALIYUN_REGION_ID: str = "cn-hangzhou"
    ALIYUN_MT_ENDPOINT: str = "mt.cn-hangzhou.aliyuncs.com"
    GEMINI_MODEL: str = "gemini-2.0-flash-001"

    # Defaults applied to requests that carry no settings
    DEFAULT_OCR_SERVICE: str = "local"
    DEFAULT_TRANSLATION_SERVICE: str = "google"
    DEFAULT_SOURCE_LANGUAGE: str = "auto"
    DEFAULT_TARGET_LANGUAGE: str = "en"

    @property
    def class_labels(self) -> List[str]:
        return _split_csv(self.CLASS_LABELS)

    @property
    def quiet_loggers(self) -> List[str]:
        return _split_csv(self.LOG_QUIET_LOGGERS)

    @property
    def bubble_classes(self) -> List[int]:
        return [int(v) for v in _split_csv(self.BUBBLE_CLASSES)]

    @field_validator("OCR_CONCURRENCY", "TRANSLATE_CONCURRENCY")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency caps must be >= 1")
        return v

    @field_validator("MODEL_FAMILY")
    @classmethod
    def validate_family(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("yolo", "yolo-seg", "detr", "end2end"):
            logger.warning(f"Unknown MODEL_FAMILY '{v}', falling back to yolo")
            return "yolo"
        return v

    class Config:
        case_sensitive = True
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Allow extra fields in .env


class Settings(DetectorConfig):
    """
    Combined application settings.
    """
    pass


# Create settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance."""
    return settings
