import json
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from services.errors import DraftGenerationError, RateLimitError

logger = logging.getLogger(__name__)


async def ollama_generate(prompt: str, *, format: Optional[str] = None, temperature: Optional[float] = None) -> str:
    """Run a single non-streaming Ollama completion and return the response text."""
    data: Dict[str, Any] = {
        "model": settings.ollama_model,
        "prompt": prompt,
        "stream": False,
        "options": {
            "temperature": settings.llm_temperature if temperature is None else temperature,
        },
    }
    if format:
        data["format"] = format

    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            resp = await client.post(settings.ollama_api_url, json=data)
    except httpx.HTTPError as e:
        logger.warning(f"Ollama generate request failed: {e}")
        raise DraftGenerationError(f"AI request failed: {e}") from e

    if resp.status_code == 429:
        raise RateLimitError("AI rate limit exceeded. Please retry later.")
    if resp.status_code != 200:
        raise DraftGenerationError(
            f"AI request failed ({resp.status_code})",
            {"status_code": resp.status_code, "body": resp.text[:200]},
        )

    return resp.json().get("response", "").strip()


async def ollama_generate_json(prompt: str, temperature: Optional[float] = None) -> Dict[str, Any]:
    """Generate a JSON object with Ollama's ``format=json`` mode."""
    text = await ollama_generate(prompt, format="json", temperature=temperature)
    if not text:
        raise DraftGenerationError("AI returned an empty response")
    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"AI returned invalid JSON: {text[:200]}")
        raise DraftGenerationError("AI returned invalid JSON") from e
    if not isinstance(result, dict):
        raise DraftGenerationError("AI returned JSON that is not an object")
    return result
