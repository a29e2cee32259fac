"""Tests for the Ollama JSON generation helper."""

import httpx
import pytest

import llm_utils
from services.errors import DraftGenerationError, RateLimitError


class FakeAsyncClient:
    """Stands in for httpx.AsyncClient, answering every POST with a canned response."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def __call__(self, *args, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def post(self, url, json=None):
        self.requests.append((url, json))
        if self.error:
            raise self.error
        return self.response


def _response(status, payload=None, text=None):
    request = httpx.Request("POST", "http://ollama.local/api/generate")
    if payload is not None:
        return httpx.Response(status, json=payload, request=request)
    return httpx.Response(status, text=text or "", request=request)


async def test_generate_json_parses_response(monkeypatch):
    client = FakeAsyncClient(_response(200, {"response": '{"title": "T", "content": "C"}'}))
    monkeypatch.setattr(llm_utils.httpx, "AsyncClient", client)

    result = await llm_utils.ollama_generate_json("prompt")

    assert result == {"title": "T", "content": "C"}
    _, body = client.requests[0]
    assert body["format"] == "json"
    assert body["stream"] is False


@pytest.mark.parametrize(
    "response, error",
    [
        (_response(429, text="slow down"), RateLimitError),
        (_response(500, text="boom"), DraftGenerationError),
        (_response(200, {"response": "not json"}), DraftGenerationError),
        (_response(200, {"response": "[1, 2]"}), DraftGenerationError),
        (_response(200, {"response": ""}), DraftGenerationError),
    ],
)
async def test_generate_json_failures(monkeypatch, response, error):
    monkeypatch.setattr(llm_utils.httpx, "AsyncClient", FakeAsyncClient(response))
    with pytest.raises(error):
        await llm_utils.ollama_generate_json("prompt")


async def test_transport_error_becomes_generation_error(monkeypatch):
    client = FakeAsyncClient(error=httpx.ConnectError("refused"))
    monkeypatch.setattr(llm_utils.httpx, "AsyncClient", client)
    with pytest.raises(DraftGenerationError):
        await llm_utils.ollama_generate_json("prompt")
