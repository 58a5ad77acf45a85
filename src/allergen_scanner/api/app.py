import re
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from ..config.settings import Settings, get_settings
from ..errors import (
    AllergenScannerError,
    InvalidMessages,
    InvalidTuning,
    MissingCredential,
    UnreadableSource,
    UnsupportedFormat,
)
from ..models.analysis import (
    FoodPhotoAnalysisResult,
    IngredientsAllergenResult,
    MenuRecommendationResult,
    SmartAnalysisResult,
)
from ..models.chat import ImageBlob
from ..models.options import AnalysisOptions
from ..services.allergen_analyzer import AllergenAnalyzer

_settings = get_settings()

# Create FastAPI app
app = FastAPI(
    title=_settings.APP_NAME,
    description=_settings.APP_DESCRIPTION,
    version=_settings.APP_VERSION,
)

# Enable CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def parse_allergens(raw: Optional[str]) -> List[str]:
    """Split a comma / newline separated allergen list"""
    if not raw:
        return []
    return [name.strip() for name in re.split(r"[,，、\n]", raw) if name.strip()]


def to_http_exception(error: AllergenScannerError) -> HTTPException:
    if isinstance(error, MissingCredential):
        status = 401
    elif isinstance(error, UnsupportedFormat):
        status = 415
    elif isinstance(error, (InvalidTuning, InvalidMessages, UnreadableSource)):
        status = 400
    else:
        status = 502
    return HTTPException(status_code=status, detail=str(error))


async def read_upload(file: UploadFile) -> ImageBlob:
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty file")
    return ImageBlob(data=contents, mime_type=file.content_type)


# Dependency injection
def get_analyzer(
    api_key: Optional[str] = Form(None),
    detail: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
) -> AllergenAnalyzer:
    if detail is not None and detail not in ("auto", "low", "high"):
        raise HTTPException(status_code=400, detail="detail must be one of auto, low, high")
    return AllergenAnalyzer(AnalysisOptions.from_settings(settings, api_key=api_key, detail=detail))


@app.post("/analyze", response_model=SmartAnalysisResult)
async def analyze(
    file: UploadFile = File(...),
    allergens: str = Form(""),
    analyzer: AllergenAnalyzer = Depends(get_analyzer),
):
    """Classify the image and run the matching allergen analysis"""
    image = await read_upload(file)
    try:
        return await analyzer.smart_analyze(image, parse_allergens(allergens))
    except AllergenScannerError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/analyze/ingredients", response_model=IngredientsAllergenResult)
async def analyze_ingredients(
    text: str = Form(...),
    allergens: str = Form(""),
    analyzer: AllergenAnalyzer = Depends(get_analyzer),
):
    try:
        return await analyzer.analyze_ingredients(text, parse_allergens(allergens))
    except AllergenScannerError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/analyze/menu", response_model=MenuRecommendationResult)
async def analyze_menu(
    text: str = Form(...),
    allergens: str = Form(""),
    analyzer: AllergenAnalyzer = Depends(get_analyzer),
):
    try:
        return await analyzer.analyze_menu(text, parse_allergens(allergens))
    except AllergenScannerError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/analyze/food", response_model=FoodPhotoAnalysisResult)
async def analyze_food(
    file: UploadFile = File(...),
    allergens: str = Form(""),
    analyzer: AllergenAnalyzer = Depends(get_analyzer),
):
    image = await read_upload(file)
    try:
        return await analyzer.analyze_food_photo(image, parse_allergens(allergens))
    except AllergenScannerError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/analyze/report")
async def analyze_report(
    file: UploadFile = File(...),
    allergens: str = Form(""),
    analyzer: AllergenAnalyzer = Depends(get_analyzer),
):
    """Stream a free-text allergen report for a food label"""
    image = await read_upload(file)
    try:
        # fail before the response starts rather than mid-stream
        analyzer.transport.check_ready()
        encoded = await analyzer.encoder.encode(image)
    except AllergenScannerError as e:
        raise to_http_exception(e)
    return StreamingResponse(
        analyzer.stream_allergen_report(encoded, parse_allergens(allergens)),
        media_type="text/plain; charset=utf-8",
    )


@app.get("/")
async def root(settings: Settings = Depends(get_settings)):
    """API root endpoint"""
    common = {
        "allergens": "Comma separated allergen names (optional)",
        "api_key": "Provider API key (optional when GEMINI_API_KEY is set)",
        "detail": "Image detail level: auto, low or high (optional)",
    }
    return {
        "message": f"Welcome to {settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "endpoints": {
            "/analyze": {
                "method": "POST",
                "description": "Detect the image type (ingredients label, menu, food photo) and assess allergen risk",
                "parameters": {"file": "Image file (multipart/form-data)", **common},
            },
            "/analyze/ingredients": {
                "method": "POST",
                "description": "Assess allergen risk of an ingredients list given as text",
                "parameters": {"text": "Ingredients text", **common},
            },
            "/analyze/menu": {
                "method": "POST",
                "description": "Rate the dishes of a menu given as text",
                "parameters": {"text": "Menu text", **common},
            },
            "/analyze/food": {
                "method": "POST",
                "description": "Assess allergen risk of the foods on a photo",
                "parameters": {"file": "Image file (multipart/form-data)", **common},
            },
            "/analyze/report": {
                "method": "POST",
                "description": "Stream a plain-text allergen report for a food label",
                "parameters": {"file": "Image file (multipart/form-data)", **common},
            },
        },
    }
