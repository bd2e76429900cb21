"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional, Dict, List


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Photo Upload & Enrichment Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD

    # ==========================================================================
    # Infrastructure
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/uploads.db"

    # ==========================================================================
    # Storage Settings (The Bridge Pattern)
    # ==========================================================================
    LOCAL_STORAGE_PATH: str = "./data/storage"
    STORAGE_PUBLIC_URL: str = "/static/storage"
    STORAGE_CHUNK_SIZE: int = 256 * 1024

    # ==========================================================================
    # Intake Validation
    # ==========================================================================
    ALLOWED_MIME_TYPES: List[str] = ["image/jpeg", "image/jpg", "image/png", "image/webp"]
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB
    MIN_IMAGE_SIZE_BYTES: int = 512
    MIN_IMAGE_WIDTH: int = 200
    MIN_IMAGE_HEIGHT: int = 200

    # ==========================================================================
    # Thumbnails
    # ==========================================================================
    # size class -> longer edge in pixels
    THUMBNAIL_SIZES: Dict[str, int] = {"small": 150, "medium": 400, "large": 800}
    THUMBNAIL_JPEG_QUALITY: int = 85

    # ==========================================================================
    # Batch Scheduling & Quota
    # ==========================================================================
    DEFAULT_CONCURRENCY: int = 3
    MAX_CONCURRENCY: int = 10
    DEFAULT_PHOTO_LIMIT: int = 10  # -1 means unlimited

    # ==========================================================================
    # AI Vision (OpenAI-compatible chat completions)
    # ==========================================================================
    AI_API_URL: str = "https://api.openai.com/v1/chat/completions"
    AI_API_KEY: Optional[str] = None
    AI_MODEL: str = "gpt-4o"
    AI_MAX_TOKENS: int = 1024
    AI_TIMEOUT_SECONDS: float = 60.0

    # ==========================================================================
    # Background Removal (remove.bg)
    # ==========================================================================
    REMOVEBG_API_URL: str = "https://api.remove.bg/v1.0/removebg"
    REMOVEBG_API_KEY: Optional[str] = None
    REMOVEBG_TIMEOUT_SECONDS: float = 30.0

    # Use simulated AI/background providers when no API keys are configured
    USE_SIMULATION: bool = True

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
