"""Async client for an Ollama-compatible embedding and generation API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when the remote model API is unreachable or answers badly."""


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class ProviderConfig:
    base_url: str = "http://localhost:11434"
    embed_model: str = "nomic-embed-text"
    generate_model: str = "gemma3:1b"
    timeout: float = 30.0
    embedding_dim: int = 768    # size of the zero vector returned for blank text


# -----------------------------
# Ollama client
# -----------------------------

class OllamaClient:
    """Thin wrapper around the Ollama HTTP API.

    Exposes the two capabilities the server needs:
        await embed(text) -> list[float]
        await generate(prompt) -> str

    Both raise :class:`ProviderError` on transport failure, non-2xx status
    or a malformed payload.
    """

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or ProviderConfig()
        # Injected by tests (httpx.MockTransport); None means real network.
        self._transport = transport

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.config.base_url.rstrip("/") + path
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{path} returned {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{path} request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{path} returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ProviderError(f"{path} returned {type(data).__name__}, expected object")
        return data

    async def embed(self, text: str) -> List[float]:
        """Embed ``text``. Blank or one-character input yields a zero vector."""
        if not text or len(text.strip()) < 2:
            logger.debug("Text too short for embedding; returning zero vector")
            return [0.0] * self.config.embedding_dim

        data = await self._post("/api/embeddings", {"model": self.config.embed_model, "prompt": text})
        vec = data.get("embedding")
        if not isinstance(vec, list) or not vec:
            raise ProviderError("embedding response has no 'embedding' list")
        try:
            return [float(x) for x in vec]
        except (TypeError, ValueError) as e:
            raise ProviderError(f"embedding contains non-numeric values: {e}") from e

    async def generate(self, prompt: str) -> str:
        data = await self._post(
            "/api/generate",
            {"model": self.config.generate_model, "prompt": prompt, "stream": False},
        )
        text = data.get("response")
        if not isinstance(text, str):
            raise ProviderError("generate response has no 'response' text")
        return text.strip()


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> Optional[OllamaClient]:
    """Create an OllamaClient from a config dict, or None when disabled."""
    p = (cfg or {}).get("provider", {}) if isinstance(cfg, dict) else {}
    if not p.get("enabled", True):
        return None
    defaults = ProviderConfig()
    return OllamaClient(
        ProviderConfig(
            base_url=str(p.get("base_url") or defaults.base_url),
            embed_model=str(p.get("embed_model") or defaults.embed_model),
            generate_model=str(p.get("generate_model") or defaults.generate_model),
            timeout=float(p.get("timeout", defaults.timeout)),
            embedding_dim=int(p.get("embedding_dim", defaults.embedding_dim)),
        )
    )
