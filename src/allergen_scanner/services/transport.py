import asyncio
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from ..errors import HttpError, InvalidMessages, MalformedResponse, MissingCredential
from ..models.chat import ChatMessage
from ..models.options import AnalysisOptions
from .http import request_timeout, session_scope

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "v1/chat/completions"
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


# ------------------------------------------------------------------
# Event-stream decoding

async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Re-split arbitrary byte chunks into UTF-8 text lines"""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer


def _first_choice(frame: Any) -> Dict[str, Any]:
    if not isinstance(frame, dict):
        return {}
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return {}
    return choices[0]


async def iter_stream_content(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield content deltas from ``data: `` frames.

    Stops at the ``[DONE]`` sentinel, at the first frame carrying a
    finish_reason, or when the lines run out. Frames that are not JSON are
    logged and skipped.
    """
    async for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith(":") or not line.startswith(DATA_PREFIX):
            continue

        data = line[len(DATA_PREFIX):]
        if data == DONE_SENTINEL:
            return

        try:
            frame = json.loads(data)
        except ValueError:
            logger.warning("Failed to parse stream frame, skipping", extra={"frame": data[:200]})
            continue

        choice = _first_choice(frame)
        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield content
        if choice.get("finish_reason"):
            return


def extract_message_content(payload: Any) -> str:
    """Return ``choices[0].message.content`` of a non-streaming reply"""
    message = _first_choice(payload).get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        raise MalformedResponse("No content in API response")
    return content


# ------------------------------------------------------------------

class ChatTransport:
    """Client for an OpenAI-style chat completions endpoint.

    ``send_once`` performs a JSON-mode round trip and returns the answer
    text; ``stream`` yields the answer incrementally and can be closed early
    to release the connection.
    """

    def __init__(self, options: AnalysisOptions, session: Optional[aiohttp.ClientSession] = None):
        self.options = options
        self.session = session

    @property
    def endpoint(self) -> str:
        return f"{self.options.base_url}{COMPLETIONS_PATH}"

    def check_ready(self) -> None:
        """Fail before any network call when credentials or tuning are unusable"""
        if not self.options.api_key:
            raise MissingCredential(
                "API key is required. Provide it via options.api_key or set GEMINI_API_KEY"
            )
        self.options.check_tuning()

    def build_request_body(
        self,
        messages: List[ChatMessage],
        stream: bool,
        temperature: Optional[float] = None,
        json_response: bool = False,
    ) -> Dict[str, Any]:
        self.check_ready()
        _check_messages(messages)

        options = self.options
        if temperature is None:
            temperature = options.stream_temperature if stream else options.temperature
        body: Dict[str, Any] = {
            "model": options.model,
            "messages": [message.to_wire() for message in messages],
            "stream": stream,
            "temperature": temperature,
            "max_tokens": options.max_tokens,
        }
        if options.top_p is not None:
            body["top_p"] = options.top_p
        if options.thinking is not None:
            body["thinking"] = options.thinking.model_dump(exclude_none=True)
        if options.user:
            body["user"] = options.user
        if json_response:
            body["response_format"] = {"type": "json_object"}
        return body

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.options.api_key}",
        }

    async def send_once(self, messages: List[ChatMessage], temperature: Optional[float] = None) -> str:
        """Non-streaming call asking for a JSON answer; returns the answer text"""
        body = self.build_request_body(messages, stream=False, temperature=temperature, json_response=True)
        logger.info(
            "Calling chat completions",
            extra={"model": self.options.model, "stream": False, "message_count": len(messages)},
        )
        try:
            async with session_scope(self.session) as session:
                async with session.post(
                    self.endpoint,
                    json=body,
                    headers=self._headers(),
                    timeout=request_timeout(self.options.timeout_seconds),
                ) as response:
                    await self._raise_for_status(response)
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError as e:
                        raise MalformedResponse(f"API response body is not JSON: {e}") from e
            content = extract_message_content(payload)
        except Exception as error:
            self._notify_error(error)
            raise
        self._notify_complete()
        return content

    async def stream(self, messages: List[ChatMessage], temperature: Optional[float] = None) -> AsyncIterator[str]:
        """Streaming call yielding content deltas in emission order.

        ``on_complete`` fires once when the stream ends on its own; closing
        the iterator early fires neither callback.
        """
        body = self.build_request_body(messages, stream=True, temperature=temperature)
        logger.info(
            "Calling chat completions",
            extra={"model": self.options.model, "stream": True, "message_count": len(messages)},
        )
        try:
            async with session_scope(self.session) as session:
                async with session.post(
                    self.endpoint,
                    json=body,
                    headers=self._headers(),
                    timeout=request_timeout(self.options.timeout_seconds, streaming=True),
                ) as response:
                    await self._raise_for_status(response)
                    async for text in iter_stream_content(iter_lines(response.content.iter_any())):
                        yield text
        except Exception as error:
            self._notify_error(error)
            raise
        self._notify_complete()

    async def send_stream(
        self,
        messages: List[ChatMessage],
        on_chunk: Optional[Callable[[str], Any]] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Consume ``stream`` and return the assembled text"""
        parts: List[str] = []
        chunks = self.stream(messages, temperature=temperature)
        try:
            async for text in chunks:
                parts.append(text)
                if on_chunk is not None:
                    on_chunk(text)
        finally:
            await chunks.aclose()
        return "".join(parts)

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if 200 <= response.status < 300:
            return
        provider_message = None
        try:
            error_body = await response.json(content_type=None)
        except (ValueError, aiohttp.ClientError, asyncio.TimeoutError):
            error_body = None
        if isinstance(error_body, dict) and isinstance(error_body.get("error"), dict):
            provider_message = error_body["error"].get("message")
        logger.error(
            "Chat completions request failed",
            extra={"status": response.status, "provider_message": provider_message},
        )
        raise HttpError(response.status, provider_message, reason=response.reason or "")

    def _notify_error(self, error: Exception) -> None:
        if self.options.on_error is not None:
            self.options.on_error(error)

    def _notify_complete(self) -> None:
        if self.options.on_complete is not None:
            self.options.on_complete()


def _check_messages(messages: List[ChatMessage]) -> None:
    if not messages:
        raise InvalidMessages("Messages must not be empty")
    last = messages[-1]
    if last.role != "user" or not last.has_text():
        raise InvalidMessages("The last message must come from the user and contain text")
