"""Chat message builders for every analysis intent.

All builders are pure: the same inputs always produce the same messages.
The analyze-* prompts spell out the expected JSON schema and a fixed
risk-level rubric so the model's answers stay comparable across calls.
"""
from typing import Iterable, List, Optional, Sequence, Union

from ..models.chat import ChatMessage, DetailLevel, EncodedImage, ContentPart, ImagePart, ImageURL, TextPart

ALL_ALLERGENS = "all common allergens"

CLASSIFY_SCHEMA = """{
  "imageType": "ingredients | menu | food | unknown",
  "confidence": 0.95,
  "reason": "why this type was chosen"
}"""

INGREDIENTS_SCHEMA = """{
  "allergens": ["detected allergen 1", "detected allergen 2"],
  "riskLevel": "safe | low | high",
  "details": [
    {
      "allergen": "allergen name",
      "found": true,
      "ingredients": ["related ingredient 1", "related ingredient 2"]
    }
  ],
  "suggestion": "safety advice"
}"""

MENU_SCHEMA = """{
  "recommendations": ["recommended dish 1", "recommended dish 2"],
  "dishRisks": [
    {
      "dishName": "dish name",
      "riskLevel": "safe | low | high",
      "allergens": ["allergens the dish may contain"],
      "reason": "why the dish is risky"
    }
  ],
  "safeDishes": ["safe dish 1"],
  "warningDishes": ["dish to be careful with"],
  "avoidDishes": ["dish to avoid"]
}"""

FOOD_PHOTO_SCHEMA = """{
  "foods": [
    {
      "name": "food name",
      "riskLevel": "safe | low | high",
      "possibleAllergens": ["possible allergen 1", "possible allergen 2"],
      "confidence": 0.95
    }
  ],
  "overallRisk": "safe | low | high",
  "suggestion": "overall advice"
}"""

INGREDIENTS_RUBRIC = """Risk levels:
- safe: none of the user's allergens were found
- low: an ingredient may contain one of the allergens (e.g. a "may contain" notice)
- high: the label clearly contains one of the user's allergens"""

MENU_RUBRIC = """Risk levels:
- safe: contains none of the user's allergens and can be eaten safely
- low: may contain an allergen indirectly (e.g. shared kitchen equipment)
- high: clearly contains one of the user's allergens and should be avoided"""

FOOD_PHOTO_RUBRIC = """Risk levels:
- safe: contains none of the user's allergens
- low: may contain an allergen, or it cannot be told from the photo
- high: very likely contains one of the user's allergens"""

JSON_ONLY = "Return only the JSON object, with no other text."


def format_allergens(allergens: Iterable[str]) -> str:
    names = [name.strip() for name in allergens if name and name.strip()]
    return ", ".join(names) if names else ALL_ALLERGENS


def image_part(image: Union[EncodedImage, str], detail: Optional[DetailLevel] = None) -> ImagePart:
    url = image.data_uri if isinstance(image, EncodedImage) else image
    return ImagePart(image_url=ImageURL(url=url, detail=detail))


def _user_message(text: str, images: Sequence[Union[EncodedImage, str]] = (), detail: Optional[DetailLevel] = None) -> ChatMessage:
    if not images:
        return ChatMessage(role="user", content=text)
    parts: List[ContentPart] = [TextPart(text=text)]
    parts.extend(image_part(image, detail) for image in images)
    return ChatMessage(role="user", content=parts)


# ---------------------- classification / extraction --------------

def build_classify_messages(image: EncodedImage, detail: DetailLevel = "auto") -> List[ChatMessage]:
    prompt = f"""Decide which of the following types this image belongs to:

1. ingredients - an ingredients label (the ingredient list printed on food packaging)
2. menu - a restaurant menu (a list of dishes)
3. food - a photo of actual food
4. unknown - cannot be determined or none of the above

Answer strictly in this JSON format:

{CLASSIFY_SCHEMA}

{JSON_ONLY}"""
    return [_user_message(prompt, [image], detail)]


def build_extract_ingredients_messages(image: EncodedImage, detail: DetailLevel = "high") -> List[ChatMessage]:
    prompt = (
        "Extract all of the text on this ingredients label exactly as written. "
        "Output only the text, with no explanations."
    )
    return [_user_message(prompt, [image], detail)]


def build_extract_menu_messages(image: EncodedImage, detail: DetailLevel = "high") -> List[ChatMessage]:
    prompt = """Extract every dish name and description from this menu, one dish per line:

Dish name: description
Dish name: description

Output only the dishes, with no explanations."""
    return [_user_message(prompt, [image], detail)]


# ---------------------- structured analysis ----------------------

def build_ingredients_analysis_messages(
    ingredients_text: str, allergens: Sequence[str], language: str = "English"
) -> List[ChatMessage]:
    prompt = f"""Analyse the following ingredients label and detect the allergens the user cares about.

Ingredients label:
{ingredients_text.strip()}

User's allergens: {format_allergens(allergens)}

Answer strictly in this JSON format:

{INGREDIENTS_SCHEMA}

{INGREDIENTS_RUBRIC}

Answer in {language}. {JSON_ONLY}"""
    return [_user_message(prompt)]


def build_menu_analysis_messages(
    menu_text: str, allergens: Sequence[str], language: str = "English"
) -> List[ChatMessage]:
    prompt = f"""Analyse the following menu and give dining advice based on the user's allergens.

Menu:
{menu_text.strip()}

User's allergens: {format_allergens(allergens)}

Answer strictly in this JSON format:

{MENU_SCHEMA}

{MENU_RUBRIC}

Answer in {language}. {JSON_ONLY}"""
    return [_user_message(prompt)]


def build_food_photo_messages(
    image: EncodedImage, allergens: Sequence[str], detail: DetailLevel = "high", language: str = "English"
) -> List[ChatMessage]:
    prompt = f"""Look carefully at this food photo, identify the foods in it and assess the allergy risk.

User's allergens: {format_allergens(allergens)}

Answer strictly in this JSON format:

{FOOD_PHOTO_SCHEMA}

{FOOD_PHOTO_RUBRIC}

confidence is how certain the identification is, from 0 to 1; closer to 1 means more certain.

Answer in {language}. {JSON_ONLY}"""
    return [_user_message(prompt, [image], detail)]


# ---------------------- free text --------------------------------

def build_allergen_report_messages(
    image: EncodedImage, allergens: Sequence[str], detail: DetailLevel = "high", language: str = "English"
) -> List[ChatMessage]:
    """Human-readable allergen report for a food label, streamed as plain text"""
    names = [name.strip() for name in allergens if name and name.strip()]
    checklist = "\n".join(f"   - {name}: contained or not" for name in names) or f"   - {ALL_ALLERGENS}"
    prompt = f"""Look carefully at this food label and identify its allergen information.

I am particularly concerned about: {format_allergens(names)}

Answer in this format:

1. **Detected allergens**
   List every allergen clearly stated on the label

2. **Results for my allergens**
{checklist}

3. **Ingredient analysis**
   List the main ingredients and mark possible allergy risks

4. **Safety advice**
   Advice on whether to eat it, based on the findings

Answer in {language}, concisely."""
    return [_user_message(prompt, [image], detail)]


def build_image_prompt_messages(
    prompt: str, images: Sequence[Union[EncodedImage, str]], detail: DetailLevel = "auto"
) -> List[ChatMessage]:
    return [_user_message(prompt, images, detail)]


def attach_images(
    history: Sequence[ChatMessage], images: Sequence[Union[EncodedImage, str]], detail: DetailLevel = "auto"
) -> List[ChatMessage]:
    """Copy of ``history`` with the images appended to its last user message"""
    messages = list(history)
    if not messages or messages[-1].role != "user" or not images:
        return messages
    last = messages[-1]
    if isinstance(last.content, str):
        parts: List[ContentPart] = [TextPart(text=last.content)]
    else:
        parts = list(last.content)
    parts.extend(image_part(image, detail) for image in images)
    messages[-1] = ChatMessage(role="user", content=parts)
    return messages
