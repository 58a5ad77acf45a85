import asyncio
import base64
import binascii
import io
import logging
from typing import Optional, Union
from urllib.parse import unquote_to_bytes, urlsplit

import aiohttp
from PIL import Image, UnidentifiedImageError

from ..errors import UnreadableSource, UnsupportedFormat
from ..models.chat import EncodedImage, ImageBlob
from .http import request_timeout, session_scope

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")

EXTENSION_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

PIL_FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}

# generic types that say nothing about the actual image format
_UNTYPED = ("", "application/octet-stream", "binary/octet-stream")

ImageSource = Union[str, bytes, ImageBlob, EncodedImage]


def is_remote_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _normalise_mime(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def mime_type_from_url(url: str) -> Optional[str]:
    """Map the file extension of a URL path (query ignored) to a MIME type"""
    filename = urlsplit(url).path.rsplit("/", 1)[-1]
    if "." not in filename:
        return None
    return EXTENSION_MIME_TYPES.get(filename.rsplit(".", 1)[-1].lower())


def decode_data_uri(uri: str) -> EncodedImage:
    """Split a ``data:<mime>[;base64],<payload>`` URI without re-encoding base64 payloads."""
    header, separator, payload = uri.partition(",")
    if not uri.startswith("data:") or not separator:
        raise UnsupportedFormat("Malformed data URI")

    params = header[len("data:"):].split(";")
    mime_type = _normalise_mime(params[0])
    if mime_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedFormat(f"Unsupported image format: {mime_type or 'unspecified'}")

    if "base64" in (p.strip().lower() for p in params[1:]):
        payload = "".join(payload.split())
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise UnreadableSource(f"Data URI payload is not valid base64: {e}") from e
        return EncodedImage(base64_payload=payload, mime_type=mime_type)

    raw = unquote_to_bytes(payload)
    return EncodedImage(base64_payload=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)


def sniff_mime_type(data: bytes) -> str:
    """Detect the image format from its bytes with Pillow"""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError) as e:
        raise UnreadableSource(f"Cannot read image data: {e}") from e
    mime_type = PIL_FORMAT_MIME_TYPES.get(image_format or "")
    if mime_type is None:
        raise UnsupportedFormat(f"Unsupported image format: {image_format}")
    return mime_type


def encode_bytes(data: bytes, mime_type: Optional[str] = None) -> EncodedImage:
    if not data:
        raise UnreadableSource("Image data is empty")
    mime_type = _normalise_mime(mime_type)
    if mime_type in _UNTYPED:
        mime_type = sniff_mime_type(data)
    elif mime_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedFormat(f"Unsupported image format: {mime_type}")
    return EncodedImage(base64_payload=base64.b64encode(data).decode("ascii"), mime_type=mime_type)


class ImageEncoder:
    """Turns URLs, data URIs and blobs into base64 payloads.

    Only remote URLs touch the network (one GET each). Already-encoded
    images are returned unchanged.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout_seconds: Optional[float] = None):
        self.session = session
        self.timeout_seconds = timeout_seconds

    async def encode(self, source: ImageSource) -> EncodedImage:
        if isinstance(source, EncodedImage):
            return source
        if isinstance(source, ImageBlob):
            return encode_bytes(source.data, source.mime_type)
        if isinstance(source, (bytes, bytearray)):
            return encode_bytes(bytes(source))
        if isinstance(source, str):
            if source.startswith("data:"):
                return decode_data_uri(source)
            if is_remote_url(source):
                return await self._fetch(source)
        raise UnsupportedFormat("Invalid image source: must be a URL, a data URI or image bytes")

    async def _fetch(self, url: str) -> EncodedImage:
        try:
            async with session_scope(self.session) as session:
                async with session.get(url, timeout=request_timeout(self.timeout_seconds)) as response:
                    if response.status >= 400:
                        raise UnreadableSource(f"Failed to load image {url}: HTTP {response.status}")
                    data = await response.read()
                    content_type = _normalise_mime(response.headers.get("Content-Type"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Failed to load image", extra={"url": url, "error": str(e)})
            raise UnreadableSource(f"Failed to load image {url}: {e}") from e

        if not data:
            raise UnreadableSource(f"Image at {url} is empty")
        mime_type = content_type if content_type in ALLOWED_MIME_TYPES else mime_type_from_url(url)
        if mime_type is None:
            raise UnsupportedFormat(f"Unsupported image format for {url}: {content_type or 'unknown'}")
        return EncodedImage(base64_payload=base64.b64encode(data).decode("ascii"), mime_type=mime_type)
