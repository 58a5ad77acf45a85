from typing import AsyncIterator, List, Optional, Sequence

from ..errors import InvalidMessages, UnsupportedFormat
from ..models.chat import ChatMessage
from ..models.options import AnalysisOptions
from . import prompt_builder
from .image_encoder import ImageEncoder, ImageSource, is_remote_url, mime_type_from_url
from .transport import ChatTransport

DEFAULT_IMAGE_PROMPT = "Describe the content of this image in detail."
DEFAULT_IMAGES_PROMPT = "Analyse these images."


class VisionChat:
    """Free-form streaming chat about one or more images.

    Remote URLs are handed to the provider as-is (after an extension check)
    unless ``inline_remote`` is set, in which case they are fetched and sent
    as data URIs like every other source.
    """

    def __init__(
        self,
        options: AnalysisOptions,
        transport: Optional[ChatTransport] = None,
        encoder: Optional[ImageEncoder] = None,
        inline_remote: bool = False,
    ):
        self.options = options
        self.transport = transport or ChatTransport(options)
        self.encoder = encoder or ImageEncoder(timeout_seconds=options.timeout_seconds)
        self.inline_remote = inline_remote

    @property
    def detail(self):
        return self.options.detail or "auto"

    async def _image_url(self, source: ImageSource) -> str:
        if isinstance(source, str) and is_remote_url(source) and not self.inline_remote:
            if mime_type_from_url(source) is None:
                raise UnsupportedFormat("Unsupported image format. Supported formats: JPEG, PNG, GIF, WebP")
            return source
        image = await self.encoder.encode(source)
        return image.data_uri

    async def _image_urls(self, sources: Sequence[ImageSource]) -> List[str]:
        return [await self._image_url(source) for source in sources]

    async def chat(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        chunks = self.transport.stream(list(messages))
        try:
            async for text in chunks:
                yield text
        finally:
            await chunks.aclose()

    async def analyze_image(self, image_source: ImageSource, prompt: str = DEFAULT_IMAGE_PROMPT) -> AsyncIterator[str]:
        urls = await self._image_urls([image_source])
        async for text in self.chat(prompt_builder.build_image_prompt_messages(prompt, urls, self.detail)):
            yield text

    async def analyze_multiple_images(
        self, image_sources: Sequence[ImageSource], prompt: str = DEFAULT_IMAGES_PROMPT
    ) -> AsyncIterator[str]:
        if not image_sources:
            raise InvalidMessages("At least one image is required")
        urls = await self._image_urls(image_sources)
        async for text in self.chat(prompt_builder.build_image_prompt_messages(prompt, urls, self.detail)):
            yield text

    async def image_conversation(
        self, image_sources: Sequence[ImageSource], history: Sequence[ChatMessage]
    ) -> AsyncIterator[str]:
        """Continue ``history``; the images join its last user message"""
        urls = await self._image_urls(image_sources)
        async for text in self.chat(prompt_builder.attach_images(history, urls, self.detail)):
            yield text
