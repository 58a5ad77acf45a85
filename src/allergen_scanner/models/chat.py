import base64
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

DetailLevel = Literal["auto", "low", "high"]
MessageRole = Literal["system", "user", "assistant"]


class EncodedImage(BaseModel):
    """Self-contained base64 image payload"""
    base64_payload: str
    mime_type: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_payload}"

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.base64_payload)


class ImageBlob(BaseModel):
    """In-memory image bytes, e.g. an uploaded file"""
    data: bytes
    mime_type: Optional[str] = None


class ImageURL(BaseModel):
    url: str = Field(..., description="data URI or http(s) URL")
    detail: Optional[DetailLevel] = None


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Union[TextPart, ImagePart]


class ChatMessage(BaseModel):
    """One message of a chat-completion request (text or multimodal)"""
    role: MessageRole
    content: Union[str, List[ContentPart]]

    def has_text(self) -> bool:
        if isinstance(self.content, str):
            return bool(self.content.strip())
        return any(isinstance(part, TextPart) and part.text.strip() for part in self.content)

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)
