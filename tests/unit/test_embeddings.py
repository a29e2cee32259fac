"""Tests for the Ollama embeddings provider."""

import httpx
import pytest

from services import embeddings as embeddings_module
from services.embeddings import Embeddings
from services.errors import EmbeddingError, EmbeddingRejectedError, MalformedInputError, RateLimitError, is_transient


class FakeAsyncClient:
    def __init__(self, response):
        self.response = response

    def __call__(self, *args, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def post(self, url, json=None):
        return self.response


def _response(status, payload=None):
    request = httpx.Request("POST", "http://ollama.local/api/embeddings")
    if payload is not None:
        return httpx.Response(status, json=payload, request=request)
    return httpx.Response(status, text="nope", request=request)


@pytest.fixture()
def ollama():
    return Embeddings(provider="ollama", dim=3, url="http://ollama.local/api/embeddings")


async def test_ollama_embedding_is_returned(ollama, monkeypatch):
    monkeypatch.setattr(embeddings_module.httpx, "AsyncClient", FakeAsyncClient(_response(200, {"embedding": [1, 0, 0.5]})))
    assert await ollama.embed("hello") == [1.0, 0.0, 0.5]


@pytest.mark.parametrize(
    "status, error, transient",
    [
        (400, EmbeddingRejectedError, False),
        (404, EmbeddingRejectedError, False),
        (429, RateLimitError, True),
        (500, EmbeddingError, True),
        (503, EmbeddingError, True),
    ],
)
async def test_ollama_status_codes_are_classified(ollama, monkeypatch, status, error, transient):
    monkeypatch.setattr(embeddings_module.httpx, "AsyncClient", FakeAsyncClient(_response(status)))

    with pytest.raises(error) as excinfo:
        await ollama.embed("hello")
    assert is_transient(excinfo.value) is transient


async def test_empty_text_is_malformed_input(ollama):
    with pytest.raises(MalformedInputError) as excinfo:
        await ollama.embed("   ")
    assert is_transient(excinfo.value) is False
