# ──────────────────────────────────────────────────────────────────────────────
# File: services/embeddings.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Embedding helpers for the note vector index.
- Primary provider: Ollama embeddings API (http://localhost:11434)
- Dev provider: deterministic pseudo-embedding (no network)
Configure via env:
  EMBEDDINGS_PROVIDER=ollama|none
  EMBEDDINGS_MODEL=nomic-embed-text
  EMBEDDINGS_DIM=768
"""
from __future__ import annotations
import hashlib
import logging
import random
from typing import Optional

import httpx

from config import settings
from services.errors import EmbeddingError, EmbeddingRejectedError, MalformedInputError, RateLimitError

logger = logging.getLogger(__name__)


class Embeddings:
    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        url: str | None = None,
        timeout: Optional[float] = None,
    ):
        self.provider = provider or settings.embeddings_provider
        self.model = model or settings.embeddings_model
        self.dim = dim or settings.embeddings_dim
        self.url = url or settings.ollama_embeddings_url
        self.timeout = timeout or settings.http_timeout_seconds

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for ``text``.

        Raises EmbeddingError (retryable) for provider failures, a non-retryable
        EmbeddingRejectedError when the provider refuses the request, and
        MalformedInputError when the input itself is unusable.
        """
        if not text or not text.strip():
            raise MalformedInputError("Cannot embed empty text")
        if self.provider == 'none':
            return self._pseudo_embed(text)
        if self.provider == 'ollama':
            return await self._ollama_embed(text)
        raise EmbeddingError(f"Unsupported embeddings provider '{self.provider}'")

    async def _ollama_embed(self, text: str) -> list[float]:
        payload = {"model": self.model, "prompt": text}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Ollama embeddings request failed: {e}")
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError("Embedding rate limit exceeded")
        if 400 <= resp.status_code < 500:
            raise EmbeddingRejectedError(
                f"Embedding API rejected the request ({resp.status_code}): {resp.text[:200]}",
                {"status_code": resp.status_code},
            )
        if resp.status_code >= 500:
            raise EmbeddingError(
                f"Embedding API error ({resp.status_code}): {resp.text[:200]}",
                {"status_code": resp.status_code},
            )

        data = resp.json()
        vec = data.get('embedding') or (data.get('data') or [{}])[0].get('embedding')
        if not vec:
            raise EmbeddingError('No embedding returned from Ollama')
        return [float(v) for v in vec]

    def _pseudo_embed(self, text: str) -> list[float]:
        # Stable pseudo-embedding using a hash; useful for offline dev and tests
        h = hashlib.sha256(text.encode('utf-8')).digest()
        rng = random.Random(h)
        return [rng.uniform(-1.0, 1.0) for _ in range(self.dim)]


_embeddings: Optional[Embeddings] = None


def get_embeddings() -> Embeddings:
    """Get global embeddings instance."""
    global _embeddings
    if _embeddings is None:
        _embeddings = Embeddings()
    return _embeddings
