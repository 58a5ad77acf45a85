from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""
    APP_NAME: str = "Allergen Scanner"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "API for allergen-risk assessment of food labels, menus and dishes"

    # Provider
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_BASE_URL: str = "https://meta-backend-sandbox.camscanner.com/us/"
    GEMINI_MODEL: str = "gemini-2.5-flash-preview-09-2025"

    # Default tuning
    DEFAULT_TEMPERATURE: float = 0.3  # structured JSON calls
    DEFAULT_STREAM_TEMPERATURE: float = 0.7  # free-text extraction and reports
    DEFAULT_MAX_TOKENS: int = 4096
    DEFAULT_DETAIL: Optional[str] = None  # auto, low or high; unset lets each stage choose
    RESPONSE_LANGUAGE: str = "English"
    REQUEST_TIMEOUT_SECONDS: float = 120.0

    LOG_LEVEL: str = "INFO"

    # Server settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"  # Allow extra fields from .env file


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
