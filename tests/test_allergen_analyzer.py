"""Tests for the classify -> extract -> analyze pipeline."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from allergen_scanner.errors import HttpError, InvalidJSON, MissingCredential, UnsupportedFormat
from allergen_scanner.models.analysis import (
    FoodPhotoAnalysisResult,
    ImageType,
    IngredientsAllergenResult,
    MenuRecommendationResult,
    RiskLevel,
)
from allergen_scanner.models.chat import ImageBlob, TextPart
from allergen_scanner.models.options import AnalysisOptions
from allergen_scanner.services import allergen_analyzer
from allergen_scanner.services.allergen_analyzer import AllergenAnalyzer, AnalysisRun, AnalysisStage
from allergen_scanner.services.image_encoder import ImageEncoder
from conftest import FakeResponse, FakeSession, completion, sse_frame, streaming


def classification(image_type: str, confidence: float = 0.9, reason: str = "looks like it") -> FakeResponse:
    return completion({"imageType": image_type, "confidence": confidence, "reason": reason})


def make_analyzer(options: AnalysisOptions, session: FakeSession) -> AllergenAnalyzer:
    analyzer = AllergenAnalyzer(options, session=session)
    analyzer.encoder.encode = AsyncMock(wraps=analyzer.encoder.encode)
    return analyzer


def stream_flags(session: FakeSession):
    return [body["stream"] for body in session.posted_bodies]


def last_prompt(session: FakeSession) -> str:
    content = session.posted_bodies[-1]["messages"][-1]["content"]
    if isinstance(content, str):
        return content
    return "".join(part["text"] for part in content if part["type"] == "text")


class TestSmartAnalyze:
    @pytest.mark.asyncio
    async def test_unknown_image_makes_one_call(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(classification("unknown", 0.3, "This is a landscape photo."))
        analyzer = make_analyzer(options, session)

        result = await analyzer.smart_analyze(png_data_uri, ["peanut"])

        assert len(session.requests) == 1
        assert result.image_type is ImageType.UNKNOWN
        assert result.confidence == 0.3
        assert result.result is None
        assert "This is a landscape photo." in result.error_message

    @pytest.mark.asyncio
    async def test_ingredients_pipeline(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(
            classification("ingredients", 0.97),
            streaming(sse_frame("Wheat flour, "), sse_frame("peanut oil"), "data: [DONE]"),
            completion(
                {
                    "allergens": ["peanut"],
                    "riskLevel": "high",
                    "details": [{"allergen": "peanut", "found": True, "ingredients": ["peanut oil"]}],
                    "suggestion": "Do not eat.",
                }
            ),
        )
        analyzer = make_analyzer(options, session)

        result = await analyzer.smart_analyze(png_data_uri, ["peanut"])

        assert stream_flags(session) == [False, True, False]
        assert result.image_type is ImageType.INGREDIENTS
        assert result.confidence == 0.97
        assert result.error_message is None
        assert isinstance(result.result, IngredientsAllergenResult)
        assert result.result.risk_level is RiskLevel.HIGH
        assert result.result.details[0].ingredients == ["peanut oil"]
        assert "Wheat flour, peanut oil" in last_prompt(session)
        analyzer.encoder.encode.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_menu_pipeline(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(
            classification("menu"),
            streaming(sse_frame("Pad thai: rice noodles, peanuts\n"), sse_frame("Green salad: lettuce", "stop")),
            completion({"recommendations": ["Green salad"], "avoidDishes": ["Pad thai"]}),
        )
        analyzer = make_analyzer(options, session)

        result = await analyzer.smart_analyze(png_data_uri, ["peanut"])

        assert stream_flags(session) == [False, True, False]
        assert isinstance(result.result, MenuRecommendationResult)
        assert result.result.avoid_dishes == ["Pad thai"]
        assert result.result.dish_risks == []
        assert "Pad thai: rice noodles, peanuts\nGreen salad: lettuce" in last_prompt(session)

    @pytest.mark.asyncio
    async def test_food_pipeline_skips_extraction(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(
            classification("food"),
            completion(
                {
                    "foods": [{"name": "Satay", "riskLevel": "high", "possibleAllergens": ["peanut"], "confidence": 0.8}],
                    "overallRisk": "high",
                    "suggestion": "Ask about the sauce.",
                }
            ),
        )
        analyzer = make_analyzer(options, session)

        result = await analyzer.smart_analyze(png_data_uri, ["peanut"])

        assert stream_flags(session) == [False, False]
        assert isinstance(result.result, FoodPhotoAnalysisResult)
        assert result.result.foods[0].name == "Satay"
        photo_request = session.posted_bodies[1]["messages"][0]["content"]
        assert photo_request[1]["image_url"]["detail"] == "high"
        analyzer.encoder.encode.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remote_image_fetched_once(self, options: AnalysisOptions, png_bytes: bytes) -> None:
        session = FakeSession(
            FakeResponse(body=png_bytes, headers={"Content-Type": "image/png"}),
            classification("food"),
            completion({"foods": [], "overallRisk": "safe"}),
        )
        analyzer = AllergenAnalyzer(options, session=session)

        await analyzer.smart_analyze("https://cdn.test/dish.png", [])

        assert [r["method"] for r in session.requests] == ["GET", "POST", "POST"]

    @pytest.mark.asyncio
    async def test_classification_detail_follows_options(self, png_data_uri: str) -> None:
        session = FakeSession(classification("unknown"))
        analyzer = AllergenAnalyzer(AnalysisOptions(api_key="k"), session=session)

        await analyzer.smart_analyze(png_data_uri, [])

        content = session.posted_bodies[0]["messages"][0]["content"]
        assert content[1]["image_url"]["detail"] == "auto"

    @pytest.mark.asyncio
    async def test_explicit_detail_applies_to_every_stage(self, png_data_uri: str) -> None:
        session = FakeSession(
            classification("ingredients"),
            streaming(sse_frame("milk powder"), "data: [DONE]"),
            completion({"allergens": ["milk"], "riskLevel": "high"}),
        )
        analyzer = AllergenAnalyzer(AnalysisOptions(api_key="k", detail="low"), session=session)

        await analyzer.smart_analyze(png_data_uri, ["milk"])

        classify_content, extract_content = (body["messages"][0]["content"] for body in session.posted_bodies[:2])
        assert classify_content[1]["image_url"]["detail"] == "low"
        assert extract_content[1]["image_url"]["detail"] == "low"

    @pytest.mark.asyncio
    async def test_unparseable_confidence_does_not_abort(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(
            completion({"imageType": "food", "confidence": "high", "reason": "a plate"}),
            completion({"foods": [{"name": "Satay", "confidence": "90%"}], "overallRisk": "low"}),
        )
        analyzer = make_analyzer(options, session)

        result = await analyzer.smart_analyze(png_data_uri, ["peanut"])

        assert result.image_type is ImageType.FOOD
        assert result.confidence == 0.0
        assert result.result.foods[0].confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_http_failure_is_annotated_and_not_retried(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(
            classification("ingredients"),
            FakeResponse(status=503, reason="Service Unavailable", body={"error": {"message": "overloaded"}}),
        )
        analyzer = make_analyzer(options, session)

        with pytest.raises(HttpError) as excinfo:
            await analyzer.smart_analyze(png_data_uri, ["milk"])

        assert excinfo.value.status == 503
        assert excinfo.value.stage == "extracting_text"
        assert excinfo.value.image_type == "ingredients"
        assert len(session.requests) == 2

    @pytest.mark.asyncio
    async def test_invalid_analysis_json(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(classification("food"), completion("Sorry, I cannot help with that."))
        analyzer = make_analyzer(options, session)

        with pytest.raises(InvalidJSON) as excinfo:
            await analyzer.smart_analyze(png_data_uri, [])

        assert excinfo.value.stage == "analyzing_photo"
        assert excinfo.value.image_type == "food"

    @pytest.mark.asyncio
    async def test_missing_credential_before_any_request(self, png_data_uri: str) -> None:
        session = FakeSession()
        analyzer = AllergenAnalyzer(AnalysisOptions(api_key=""), session=session)

        with pytest.raises(MissingCredential) as excinfo:
            await analyzer.smart_analyze(png_data_uri, ["egg"])

        assert session.requests == []
        assert excinfo.value.stage == "classifying"
        assert excinfo.value.image_type is None

    @pytest.mark.asyncio
    async def test_unsupported_source(self, options: AnalysisOptions) -> None:
        session = FakeSession()
        analyzer = AllergenAnalyzer(options, session=session)

        with pytest.raises(UnsupportedFormat):
            await analyzer.smart_analyze("data:image/tiff;base64,AAAA", [])
        assert session.requests == []

    @pytest.mark.asyncio
    async def test_runs_do_not_share_images(self, options: AnalysisOptions, png_bytes: bytes, png_data_uri: str) -> None:
        session = FakeSession(classification("unknown"), classification("unknown"))
        analyzer = make_analyzer(options, session)

        await analyzer.smart_analyze(png_data_uri, [])
        await analyzer.smart_analyze(ImageBlob(data=png_bytes, mime_type="image/png"), [])

        assert analyzer.encoder.encode.await_count == 2


class TestAnalysisRun:
    def test_terminal_stage_is_not_left(self) -> None:
        run = AnalysisRun("data:image/png;base64,AAAA", [])
        run.advance(AnalysisStage.CLASSIFYING)
        run.advance(AnalysisStage.DONE)

        with pytest.raises(RuntimeError):
            run.advance(AnalysisStage.ANALYZING)

    def test_fail_keeps_existing_annotation(self) -> None:
        run = AnalysisRun("data:image/png;base64,AAAA", [])
        run.advance(AnalysisStage.ANALYZING)
        error = HttpError(500)
        error.stage = "extracting_text"

        run.fail(error)

        assert error.stage == "extracting_text"
        assert run.stage is AnalysisStage.FAILED


class TestDirectAnalysis:
    @pytest.mark.asyncio
    async def test_analyze_ingredients_text(self, options: AnalysisOptions) -> None:
        session = FakeSession(completion({"allergens": [], "riskLevel": "safe", "suggestion": "Fine."}))
        analyzer = AllergenAnalyzer(options, session=session)

        result = await analyzer.analyze_ingredients("water, sugar", ["milk"])

        assert result.risk_level is RiskLevel.SAFE
        assert session.posted_bodies[0]["response_format"] == {"type": "json_object"}
        assert session.posted_bodies[0]["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_stream_allergen_report(self, options: AnalysisOptions, png_data_uri: str) -> None:
        session = FakeSession(streaming(sse_frame("1. Detected: "), sse_frame("milk"), "data: [DONE]"))
        analyzer = AllergenAnalyzer(options, session=session)

        chunks = [chunk async for chunk in analyzer.stream_allergen_report(png_data_uri, ["milk"])]

        assert chunks == ["1. Detected: ", "milk"]
        assert session.posted_bodies[0]["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_extract_text_rejects_food(self, options: AnalysisOptions) -> None:
        analyzer = AllergenAnalyzer(options, session=FakeSession())
        image = await ImageEncoder().encode("data:image/png;base64,AAAA")

        with pytest.raises(ValueError):
            await analyzer.extract_text(image, ImageType.FOOD)


class TestModuleFunctions:
    @pytest.mark.asyncio
    async def test_smart_analyze_image_uses_given_options(self, png_data_uri: str) -> None:
        sentinel = MagicMock()
        with patch.object(allergen_analyzer.AllergenAnalyzer, "smart_analyze", AsyncMock(return_value=sentinel)) as run:
            result = await allergen_analyzer.smart_analyze_image(
                png_data_uri, ["egg"], AnalysisOptions(api_key="k"), temperature=0.1
            )

        assert result is sentinel
        run.assert_awaited_once_with(png_data_uri, ["egg"])

    def test_resolve_options_applies_overrides(self) -> None:
        options = allergen_analyzer.resolve_options(AnalysisOptions(api_key="k"), detail="low", user=None)

        assert options.detail == "low"
        assert options.api_key == "k"

    def test_resolve_options_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from allergen_scanner.config.settings import Settings

        monkeypatch.setattr(allergen_analyzer, "get_settings", lambda: Settings(GEMINI_API_KEY="env-key"))

        options = allergen_analyzer.resolve_options(max_tokens=2048)

        assert options.api_key == "env-key"
        assert options.max_tokens == 2048
