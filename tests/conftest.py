"""
Shared fixtures and aiohttp fakes.

FakeSession records every request it receives so tests can assert how
many network calls a pipeline made.
"""

import base64
import io
import json
from typing import Any, Dict, Iterable, List, Union

import pytest
from PIL import Image

from allergen_scanner.models.options import AnalysisOptions


class FakeContent:
    def __init__(self, chunks: Iterable[bytes], error: Exception = None):
        self._chunks = list(chunks)
        self._error = error

    async def iter_any(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: Union[bytes, str, Dict[str, Any]] = b"",
        chunks: Iterable[bytes] = (),
        headers: Dict[str, str] = None,
        reason: str = "OK",
        stream_error: Exception = None,
    ):
        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.status = status
        self.reason = reason
        self.headers = headers or {}
        self.content = FakeContent(chunks, stream_error)
        self._body = body
        self.released = False

    async def json(self, content_type: str = "application/json") -> Any:
        return json.loads(self._body.decode("utf-8"))

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        self.released = True
        return False


class FakeSession:
    def __init__(self, *responses: Union[FakeResponse, Exception]):
        self.responses: List[Union[FakeResponse, Exception]] = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def _next(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("POST", url, kwargs)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, kwargs)

    @property
    def posted_bodies(self) -> List[Dict[str, Any]]:
        return [r["json"] for r in self.requests if r["method"] == "POST"]


def completion(content: Union[str, Dict[str, Any]]) -> FakeResponse:
    """Non-streaming provider reply whose answer is ``content``"""
    if isinstance(content, dict):
        content = json.dumps(content)
    return FakeResponse(body={"choices": [{"message": {"role": "assistant", "content": content}}]})


def sse_frame(content: str = None, finish_reason: str = None) -> str:
    choice: Dict[str, Any] = {"index": 0, "delta": {}}
    if content is not None:
        choice["delta"]["content"] = content
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return "data: " + json.dumps({"choices": [choice]})


def streaming(*lines: str) -> FakeResponse:
    """Streaming provider reply made of the given event-stream lines"""
    return FakeResponse(chunks=[(line + "\n\n").encode("utf-8") for line in lines])


@pytest.fixture
def options() -> AnalysisOptions:
    return AnalysisOptions(api_key="test-key", base_url="https://provider.test/")


@pytest.fixture
def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_data_uri(png_bytes: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")
