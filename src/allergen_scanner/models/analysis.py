import logging
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    SAFE = "safe"
    LOW = "low"
    HIGH = "high"


class ImageType(str, Enum):
    INGREDIENTS = "ingredients"
    MENU = "menu"
    FOOD = "food"
    UNKNOWN = "unknown"


# ------------------------------------------------------------------
# Lenient coercion: the model is trusted to follow the requested schema,
# absent fields fall back to empty values instead of failing validation.

def _coerce_risk_level(value: Any) -> Optional[RiskLevel]:
    if value is None or isinstance(value, RiskLevel):
        return value
    try:
        return RiskLevel(str(value).strip().lower())
    except ValueError:
        logger.warning("Unrecognised risk level from model", extra={"risk_level": value})
        return None


def _coerce_image_type(value: Any) -> ImageType:
    if isinstance(value, ImageType):
        return value
    try:
        return ImageType(str(value).strip().lower())
    except ValueError:
        return ImageType.UNKNOWN


def _none_to_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [item if isinstance(item, str) else str(item) for item in value if item is not None]
    logger.warning("Expected a list of strings from model", extra={"value": value})
    return []


def _none_to_text(value: Any) -> Any:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _coerce_confidence(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        if text.endswith("%"):
            return float(text[:-1]) / 100
        return float(text)
    except ValueError:
        logger.warning("Unrecognised confidence from model", extra={"confidence": value})
        return 0.0


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return bool(value)


def _entries(key: str):
    """Accept a list of objects; bare strings become ``{key: text}``"""

    def coerce(value: Any) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        entries = []
        for item in value:
            if isinstance(item, (dict, BaseModel)):
                entries.append(item)
            elif isinstance(item, str):
                if item.strip():
                    entries.append({key: item})
            else:
                logger.warning("Dropping unrecognised entry from model", extra={"field": key, "entry": item})
        return entries

    return coerce


Risk = Annotated[Optional[RiskLevel], BeforeValidator(_coerce_risk_level)]
StrList = Annotated[List[str], BeforeValidator(_none_to_list)]
Text = Annotated[str, BeforeValidator(_none_to_text)]
Confidence = Annotated[float, BeforeValidator(_coerce_confidence)]
Flag = Annotated[bool, BeforeValidator(_coerce_flag)]


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys the model is asked to produce"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClassificationResult(CamelModel):
    image_type: Annotated[ImageType, BeforeValidator(_coerce_image_type)] = ImageType.UNKNOWN
    confidence: Confidence = 0.0
    reason: Text = ""


# ---------------------- ingredients label ------------------------

class AllergenDetail(CamelModel):
    allergen: Text = ""
    found: Flag = False
    ingredients: StrList = Field(default_factory=list)


class IngredientsAllergenResult(CamelModel):
    """Allergens found on an ingredients label"""
    kind: Literal["ingredients"] = "ingredients"
    allergens: StrList = Field(default_factory=list)
    risk_level: Risk = None
    details: Annotated[List[AllergenDetail], BeforeValidator(_entries("allergen"))] = Field(default_factory=list)
    suggestion: Text = ""

    @field_validator("allergens")
    @classmethod
    def _unique_allergens(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))


# ---------------------- restaurant menu --------------------------

class DishRisk(CamelModel):
    dish_name: Text = ""
    risk_level: Risk = None
    allergens: StrList = Field(default_factory=list)
    reason: Text = ""


class MenuRecommendationResult(CamelModel):
    """Per-dish risks and recommendations for a menu"""
    kind: Literal["menu"] = "menu"
    recommendations: StrList = Field(default_factory=list)
    dish_risks: Annotated[List[DishRisk], BeforeValidator(_entries("dishName"))] = Field(default_factory=list)
    safe_dishes: StrList = Field(default_factory=list)
    warning_dishes: StrList = Field(default_factory=list)
    avoid_dishes: StrList = Field(default_factory=list)


# ---------------------- food photo -------------------------------

class FoodRisk(CamelModel):
    name: Text = ""
    risk_level: Risk = None
    possible_allergens: StrList = Field(default_factory=list)
    confidence: Confidence = 0.0


class FoodPhotoAnalysisResult(CamelModel):
    """Dishes recognised on a photo and their allergen risk"""
    kind: Literal["food"] = "food"
    foods: Annotated[List[FoodRisk], BeforeValidator(_entries("name"))] = Field(default_factory=list)
    overall_risk: Risk = None
    suggestion: Text = ""


AnalysisResult = Annotated[
    Union[IngredientsAllergenResult, MenuRecommendationResult, FoodPhotoAnalysisResult],
    Field(discriminator="kind"),
]


class SmartAnalysisResult(CamelModel):
    """Terminal result of a smart analysis run"""
    image_type: ImageType
    confidence: float = 0.0
    result: Optional[AnalysisResult] = None
    error_message: Optional[str] = None
