"""LLM client abstractions used by message analysis."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urljoin

import httpx

from ..core.config import LlmSettings


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    async def generate(self, prompt: str) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Thin asynchronous client for the Ollama HTTP API."""

    settings: LlmSettings
    transport: httpx.AsyncBaseTransport | None = None

    async def generate(self, prompt: str) -> str:
        """Send a JSON-mode completion request to the Ollama server."""
        endpoint = _resolve_endpoint(self.settings.base_url)
        payload: dict[str, object] = {
            "model": self.settings.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.settings.temperature},
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(endpoint, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(f"LLM request failed: {exc}") from exc
        except ValueError as exc:
            raise LLMError("LLM returned invalid JSON") from exc

        result = data.get("response") if isinstance(data, dict) else None
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return result

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"


def _resolve_endpoint(base_url: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, "api/generate")


__all__ = ["LLMClient", "OllamaClient", "LLMError"]
