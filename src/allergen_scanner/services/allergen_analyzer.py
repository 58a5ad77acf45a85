import logging
from enum import Enum
from typing import Any, AsyncIterator, List, Optional, Sequence, Type, TypeVar

import aiohttp
from pydantic import BaseModel

from ..config.settings import get_settings
from ..errors import AllergenScannerError
from ..models.analysis import (
    ClassificationResult,
    FoodPhotoAnalysisResult,
    ImageType,
    IngredientsAllergenResult,
    MenuRecommendationResult,
    SmartAnalysisResult,
)
from ..models.chat import ChatMessage, EncodedImage
from ..models.options import AnalysisOptions
from . import prompt_builder
from .image_encoder import ImageEncoder, ImageSource
from .response_validator import validate
from .transport import ChatTransport

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class AnalysisStage(str, Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    EXTRACTING_TEXT = "extracting_text"
    ANALYZING = "analyzing"
    ANALYZING_PHOTO = "analyzing_photo"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STAGES = (AnalysisStage.DONE, AnalysisStage.FAILED)


class AnalysisRun:
    """State of one smart analysis: current stage, detected type, cached image"""

    def __init__(self, source: ImageSource, allergens: Sequence[str]):
        self.source = source
        self.allergens = tuple(allergens)
        self.stage = AnalysisStage.IDLE
        self.image_type: Optional[ImageType] = None
        self.image: Optional[EncodedImage] = None

    def advance(self, stage: AnalysisStage) -> None:
        if self.stage in TERMINAL_STAGES:
            raise RuntimeError(f"Analysis already finished ({self.stage.value})")
        self.stage = stage

    def fail(self, error: Exception) -> None:
        if isinstance(error, AllergenScannerError):
            error.stage = error.stage or self.stage.value
            if error.image_type is None and self.image_type is not None:
                error.image_type = self.image_type.value
        self.stage = AnalysisStage.FAILED


class AllergenAnalyzer:
    """Classifies an image and runs the matching allergen analysis.

    ingredients/menu: classify -> stream text extraction -> JSON analysis
    food:             classify -> JSON photo analysis
    unknown:          classify only

    Stages run strictly in sequence; any failure propagates unchanged
    (annotated with stage and image type) and nothing is retried.
    """

    def __init__(
        self,
        options: AnalysisOptions,
        transport: Optional[ChatTransport] = None,
        encoder: Optional[ImageEncoder] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.options = options
        self.transport = transport or ChatTransport(options, session=session)
        self.encoder = encoder or ImageEncoder(session=session, timeout_seconds=options.timeout_seconds)

    async def smart_analyze(self, image_source: ImageSource, user_allergens: Sequence[str]) -> SmartAnalysisResult:
        run = AnalysisRun(image_source, user_allergens)
        try:
            run.advance(AnalysisStage.CLASSIFYING)
            run.image = await self.encoder.encode(image_source)
            classification = await self.classify(run.image)
            run.image_type = classification.image_type
            logger.info(
                "Image type detected",
                extra={
                    "image_type": classification.image_type.value,
                    "confidence": classification.confidence,
                    "reason": classification.reason,
                },
            )

            if classification.image_type is ImageType.UNKNOWN:
                run.advance(AnalysisStage.DONE)
                return SmartAnalysisResult(
                    image_type=ImageType.UNKNOWN,
                    confidence=classification.confidence,
                    result=None,
                    error_message=f"Unable to identify the image type. {classification.reason}".strip(),
                )

            result: Any
            if classification.image_type is ImageType.FOOD:
                run.advance(AnalysisStage.ANALYZING_PHOTO)
                result = await self.analyze_food_photo(run.image, run.allergens)
            else:
                run.advance(AnalysisStage.EXTRACTING_TEXT)
                text = await self.extract_text(run.image, classification.image_type)
                run.advance(AnalysisStage.ANALYZING)
                if classification.image_type is ImageType.INGREDIENTS:
                    result = await self.analyze_ingredients(text, run.allergens)
                else:
                    result = await self.analyze_menu(text, run.allergens)

            run.advance(AnalysisStage.DONE)
            return SmartAnalysisResult(
                image_type=classification.image_type,
                confidence=classification.confidence,
                result=result,
            )
        except Exception as error:
            failed_stage = run.stage.value
            run.fail(error)
            logger.error(
                "Smart analysis failed",
                extra={
                    "stage": failed_stage,
                    "image_type": run.image_type.value if run.image_type else None,
                    "error": str(error),
                },
            )
            raise

    # ---------------------- stages ---------------------------------

    async def classify(self, image: EncodedImage) -> ClassificationResult:
        messages = prompt_builder.build_classify_messages(image, detail=self.options.detail or "auto")
        return await self._request_json(messages, ClassificationResult)

    async def extract_text(self, image: EncodedImage, image_type: ImageType) -> str:
        """Stream the label or menu text out of the image"""
        detail = self.options.detail or "high"
        if image_type is ImageType.INGREDIENTS:
            messages = prompt_builder.build_extract_ingredients_messages(image, detail=detail)
        elif image_type is ImageType.MENU:
            messages = prompt_builder.build_extract_menu_messages(image, detail=detail)
        else:
            raise ValueError(f"No text extraction for image type {image_type.value}")
        return await self.transport.send_stream(messages)

    async def analyze_ingredients(self, ingredients_text: str, user_allergens: Sequence[str]) -> IngredientsAllergenResult:
        messages = prompt_builder.build_ingredients_analysis_messages(
            ingredients_text, user_allergens, language=self.options.language
        )
        return await self._request_json(messages, IngredientsAllergenResult)

    async def analyze_menu(self, menu_text: str, user_allergens: Sequence[str]) -> MenuRecommendationResult:
        messages = prompt_builder.build_menu_analysis_messages(
            menu_text, user_allergens, language=self.options.language
        )
        return await self._request_json(messages, MenuRecommendationResult)

    async def analyze_food_photo(self, image_source: ImageSource, user_allergens: Sequence[str]) -> FoodPhotoAnalysisResult:
        image = image_source if isinstance(image_source, EncodedImage) else await self.encoder.encode(image_source)
        messages = prompt_builder.build_food_photo_messages(
            image, user_allergens, detail=self.options.detail or "high", language=self.options.language
        )
        return await self._request_json(messages, FoodPhotoAnalysisResult)

    async def stream_allergen_report(self, image_source: ImageSource, user_allergens: Sequence[str]) -> AsyncIterator[str]:
        """Free-text allergen report for a food label, yielded as it arrives"""
        image = await self.encoder.encode(image_source)
        messages = prompt_builder.build_allergen_report_messages(
            image, user_allergens, detail=self.options.detail or "high", language=self.options.language
        )
        chunks = self.transport.stream(messages)
        try:
            async for text in chunks:
                yield text
        finally:
            await chunks.aclose()

    async def _request_json(self, messages: List[ChatMessage], result_type: Type[T]) -> T:
        raw_text = await self.transport.send_once(messages)
        return validate(raw_text, result_type)


# ------------------------------------------------------------------
# Convenience entry points for callers that do not keep an analyzer

def resolve_options(options: Optional[AnalysisOptions] = None, **overrides: Any) -> AnalysisOptions:
    if options is None:
        return AnalysisOptions.from_settings(get_settings(), **overrides)
    updates = {key: value for key, value in overrides.items() if value is not None}
    return options.model_copy(update=updates) if updates else options


async def smart_analyze_image(
    image_url: ImageSource, user_allergens: Sequence[str], options: Optional[AnalysisOptions] = None, **overrides: Any
) -> SmartAnalysisResult:
    analyzer = AllergenAnalyzer(resolve_options(options, **overrides))
    return await analyzer.smart_analyze(image_url, user_allergens)


async def analyze_ingredients_allergens(
    ingredients_text: str, user_allergens: Sequence[str], options: Optional[AnalysisOptions] = None, **overrides: Any
) -> IngredientsAllergenResult:
    analyzer = AllergenAnalyzer(resolve_options(options, **overrides))
    return await analyzer.analyze_ingredients(ingredients_text, user_allergens)


async def analyze_menu_recommendations(
    menu_text: str, user_allergens: Sequence[str], options: Optional[AnalysisOptions] = None, **overrides: Any
) -> MenuRecommendationResult:
    analyzer = AllergenAnalyzer(resolve_options(options, **overrides))
    return await analyzer.analyze_menu(menu_text, user_allergens)


async def analyze_food_photo(
    image_url: ImageSource, user_allergens: Sequence[str], options: Optional[AnalysisOptions] = None, **overrides: Any
) -> FoodPhotoAnalysisResult:
    analyzer = AllergenAnalyzer(resolve_options(options, **overrides))
    return await analyzer.analyze_food_photo(image_url, user_allergens)
