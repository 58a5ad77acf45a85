from typing import Optional


class AllergenScannerError(Exception):
    """Base class for every failure raised by the analysis pipeline.

    ``stage`` and ``image_type`` are filled in by the analyzer when the error
    escapes one of its stages, so callers can decide whether re-running the
    whole pipeline makes sense.
    """

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.stage: Optional[str] = None
        self.image_type: Optional[str] = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            context = f"stage={self.stage}"
            if self.image_type:
                context += f", image_type={self.image_type}"
            return f"{message} [{context}]"
        return message


class MissingCredential(AllergenScannerError):
    """No API key was configured for the provider."""


class InvalidTuning(AllergenScannerError, ValueError):
    """Tuning parameters are inconsistent (e.g. reasoning budget >= max tokens)."""


class InvalidMessages(AllergenScannerError, ValueError):
    """The chat message sequence cannot be sent as-is."""


class UnsupportedFormat(AllergenScannerError):
    """The image is not one of jpeg, jpg, png, gif or webp."""


class UnreadableSource(AllergenScannerError):
    """The image could not be fetched or read."""


class HttpError(AllergenScannerError):
    """The provider answered with a non-2xx status."""

    def __init__(self, status: int, provider_message: Optional[str] = None, reason: str = ""):
        message = f"API request failed: {status} {reason}".rstrip()
        if provider_message:
            message += f". {provider_message}"
        super().__init__(message)
        self.status = status
        self.provider_message = provider_message


class MalformedResponse(AllergenScannerError):
    """The provider reply does not have the expected shape."""


class InvalidJSON(AllergenScannerError):
    """The model's answer is not a parseable JSON object."""

    def __init__(self, raw_text: str, message: str = "Model response is not valid JSON"):
        super().__init__(message)
        self.raw_text = raw_text
