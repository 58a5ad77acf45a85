from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ..config.settings import Settings
from ..errors import InvalidTuning
from .chat import DetailLevel


class ThinkingConfig(BaseModel):
    """Reasoning configuration forwarded to the provider"""
    type: Literal["enabled", "disabled", "auto"] = "enabled"
    budget_tokens: Optional[int] = None  # must stay below max_tokens
    include_thoughts: Optional[bool] = None


class AnalysisOptions(BaseModel):
    """Per-analyzer configuration, resolved once and never mutated.

    ``temperature`` is used for the structured (JSON) calls and
    ``stream_temperature`` for free-text streaming calls. ``detail`` left
    unset means each stage picks its own default (``auto`` for
    classification, ``high`` for extraction and photo analysis).
    """
    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = None
    base_url: str = "https://meta-backend-sandbox.camscanner.com/us/"
    model: str = "gemini-2.5-flash-preview-09-2025"
    temperature: float = 0.3
    stream_temperature: float = 0.7
    max_tokens: int = 4096
    top_p: Optional[float] = None
    thinking: Optional[ThinkingConfig] = None
    user: Optional[str] = None
    detail: Optional[DetailLevel] = None
    language: str = "English"
    timeout_seconds: Optional[float] = 120.0
    on_error: Optional[Callable[[Exception], Any]] = None
    on_complete: Optional[Callable[[], Any]] = None

    @field_validator("base_url")
    @classmethod
    def _trailing_slash(cls, value: str) -> str:
        return value if value.endswith("/") else value + "/"

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "AnalysisOptions":
        """Build options from settings; non-None overrides win"""
        values = {
            "api_key": settings.GEMINI_API_KEY,
            "base_url": settings.GEMINI_BASE_URL,
            "model": settings.GEMINI_MODEL,
            "temperature": settings.DEFAULT_TEMPERATURE,
            "stream_temperature": settings.DEFAULT_STREAM_TEMPERATURE,
            "max_tokens": settings.DEFAULT_MAX_TOKENS,
            "detail": settings.DEFAULT_DETAIL,
            "language": settings.RESPONSE_LANGUAGE,
            "timeout_seconds": settings.REQUEST_TIMEOUT_SECONDS,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def check_tuning(self) -> None:
        budget = self.thinking.budget_tokens if self.thinking else None
        if budget is not None and budget >= self.max_tokens:
            raise InvalidTuning(
                f"max_tokens ({self.max_tokens}) must be greater than thinking.budget_tokens ({budget})"
            )
