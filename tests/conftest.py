from __future__ import annotations

import json
from typing import Callable, Iterable, Optional

import httpx
import pytest

from playground_api.config import Settings
from playground_api.db.store import MemoryConversationStore

UPSTREAM_BASE_URL = "https://upstream.test/api/v1"
COMPLETIONS_URL = f"{UPSTREAM_BASE_URL}/chat/completions"


class ChunkedStream(httpx.AsyncByteStream):
    """Upstream body delivered in the given chunks, optionally failing afterwards."""

    def __init__(self, chunks: Iterable[bytes], error: Optional[Exception] = None):
        self._chunks = list(chunks)
        self._error = error

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def data_record(payload: dict) -> bytes:
    return b"data: " + json.dumps(payload).encode() + b"\n"


def delta_record(content: str) -> bytes:
    return data_record({"choices": [{"delta": {"content": content}}]})


DONE_RECORD = b"data: [DONE]\n"


class FakeUpstream:
    """MockTransport handler that records requests and replays a canned reply."""

    def __init__(self, reply: Callable[[httpx.Request], httpx.Response]):
        self._reply = reply
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._reply(request)
        self.responses.append(response)
        return response

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def streaming_upstream(body: bytes, chunk_size: Optional[int] = None, error: Optional[Exception] = None) -> FakeUpstream:
    if chunk_size:
        chunks = [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)]
    else:
        chunks = [body]

    def reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            stream=ChunkedStream(chunks, error),
        )

    return FakeUpstream(reply)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openrouter_api_key="test-key",
        openrouter_base_url=UPSTREAM_BASE_URL,
        openrouter_referer="http://localhost:8080",
        store_backend="memory",
        log_format="console",
    )


@pytest.fixture
def store() -> MemoryConversationStore:
    return MemoryConversationStore()
