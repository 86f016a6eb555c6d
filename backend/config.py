import logging
from enum import Enum
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    # Application mode - defaults to DEV
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Google Gemini API
    GOOGLE_API_KEY: str = ""
    GEMINI_IMAGE_MODEL: str = "models/gemini-2.5-flash-image-preview"
    GEMINI_VISION_MODEL: str = "models/gemini-2.5-flash"

    # Timeouts (seconds)
    API_TIMEOUT_SECONDS: int = 120
    IMAGE_DECODE_TIMEOUT_SECONDS: float = 10.0

    # Image limits
    MAX_UPLOAD_SIZE_BYTES: int = 10 * 1024 * 1024  # 10MB
    DEFAULT_MAX_IMAGE_SIZE: int = 1024

    # Storage backend: "memory" for tests/ephemeral runs, "local" for JSON files
    STORAGE_BACKEND: str = "local"
    STORAGE_DIR: str = "storage"
    RESULT_HISTORY_LIMIT: int = 50

    # Comma-separated list of allowed origins (extension origins, dev servers)
    CORS_ALLOWED_ORIGINS: str = ""

    LOG_LEVEL: str = "INFO"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """Allowed CORS origins; in dev, localhost is always allowed."""
        origins: List[str] = []
        if self.APP_MODE == AppMode.DEV:
            origins = [
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:3000",
                "http://127.0.0.1:5173",
            ]

        if self.CORS_ALLOWED_ORIGINS:
            origins.extend(
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            )

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked."
            )
        return origins

    @property
    def has_api_key(self) -> bool:
        return len(self.GOOGLE_API_KEY.strip()) > 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and fail fast on production misconfiguration.

    In DEV a missing API key only disables external generation; the
    pipeline still answers with clearly tagged fallback results.
    """
    if settings.APP_MODE == AppMode.PROD:
        if settings.DEBUG:
            error_msg = (
                "DEBUG=True in production! "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if not settings.has_api_key:
            error_msg = "GOOGLE_API_KEY must be set in production."
            logger.critical(error_msg)
            raise ValueError(error_msg)

    if settings.STORAGE_BACKEND not in ("memory", "local"):
        raise ValueError(
            f"Unsupported STORAGE_BACKEND '{settings.STORAGE_BACKEND}' "
            "(expected 'memory' or 'local')"
        )

    if settings.RESULT_HISTORY_LIMIT < 1:
        raise ValueError("RESULT_HISTORY_LIMIT must be at least 1")

    if not settings.has_api_key:
        logger.warning(
            "GOOGLE_API_KEY not configured; try-on requests will use fallback results"
        )

    return settings


@lru_cache()
def get_settings() -> Settings:
    """Get application settings (cached, validated on first access)."""
    settings = Settings()
    return _validate_settings(settings)
