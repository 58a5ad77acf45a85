import json
import logging
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import InvalidJSON, MalformedResponse

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json fence some models add despite instructions"""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_json(raw_text: str) -> Dict[str, Any]:
    try:
        data = json.loads(strip_code_fence(raw_text))
    except (TypeError, ValueError) as e:
        logger.error("Failed to parse JSON response", extra={"raw_text": raw_text[:500]})
        raise InvalidJSON(raw_text) from e
    if not isinstance(data, dict):
        raise InvalidJSON(raw_text, "Model response is not a JSON object")
    return data


def validate(raw_text: str, result_type: Type[T]) -> T:
    """Parse the model's answer into ``result_type``.

    Only parseability is enforced; fields the model left out take the
    result type's empty defaults.
    """
    data = parse_json(raw_text)
    try:
        return result_type.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"Model response does not fit {result_type.__name__}: {e}") from e
