"""Embedding provider clients: OpenAI-compatible (batched) and Ollama (per item)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from mediasync.errors import (
    ConfigurationError,
    EmbeddingProviderError,
    InvalidApiKeyError,
    QuotaExceededError,
    RateLimitError,
)
from mediasync.models.server import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EmbeddingConfig:
    base_url: str
    model: str
    dimensions: int = 1536
    api_key: str | None = None

    @classmethod
    def from_payload(cls, data: dict) -> EmbeddingConfig:
        return cls(
            base_url=(data.get("baseUrl") or "").rstrip("/"),
            model=data.get("model") or "",
            dimensions=int(data.get("dimensions") or 1536),
            api_key=data.get("apiKey") or None,
        )

    def to_payload(self) -> dict:
        return {
            "baseUrl": self.base_url,
            "model": self.model,
            "dimensions": self.dimensions,
            "apiKey": self.api_key,
        }


def translate_provider_error(exc: BaseException) -> EmbeddingProviderError | None:
    """Map a provider failure to a stable error, or None if it is not a known class."""
    status = None
    body = ""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        try:
            body = exc.response.text
        except httpx.ResponseNotRead:
            body = ""
    message = f"{exc} {body}"
    if "insufficient_quota" in message:
        return QuotaExceededError()
    if status == 429 or "rate_limit" in message:
        return RateLimitError()
    if status == 401 or "invalid_api_key" in message or "401" in str(exc):
        return InvalidApiKeyError()
    return None


class EmbeddingClient(ABC):
    """Common surface for provider clients."""

    provider: EmbeddingProvider
    supports_batch: bool = False

    def __init__(self, config: EmbeddingConfig, timeout: float = 30.0) -> None:
        self.config = config
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        """One vector (or None) per input, in input order."""

    @abstractmethod
    async def embed_one(self, text: str) -> list[float]:
        """A single vector for one input."""


class OpenAICompatibleClient(EmbeddingClient):
    """POST {base}/embeddings with a list input; one vector per input, in order."""

    provider = EmbeddingProvider.OPENAI_COMPATIBLE
    supports_batch = True

    async def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        payload: dict = {"model": self.config.model, "input": texts}
        if self.config.dimensions:
            payload["dimensions"] = self.config.dimensions
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self.config.base_url}/embeddings",
                    headers=self._headers(),
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError as exc:
            raise EmbeddingProviderError(
                f"Cannot connect to embedding provider at {self.config.base_url}: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            known = translate_provider_error(exc)
            if known is not None:
                raise known from exc
            raise EmbeddingProviderError(
                f"Embedding provider returned HTTP {exc.response.status_code}: {exc}"
            ) from exc

        rows = data.get("data") if isinstance(data, dict) else None
        if not rows or len(rows) != len(texts):
            raise EmbeddingProviderError(
                f"Invalid response: expected {len(texts)} embeddings, got {len(rows or [])}"
            )
        # Providers may return rows out of order; "index" is authoritative when present
        ordered: list[list[float] | None] = [None] * len(texts)
        for position, row in enumerate(rows):
            index = row.get("index", position)
            if 0 <= index < len(texts):
                ordered[index] = row.get("embedding")
        return ordered

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        if vectors[0] is None:
            raise EmbeddingProviderError("No embedding returned from provider")
        return vectors[0]


class OllamaClient(EmbeddingClient):
    """POST {base}/api/embeddings with a single prompt."""

    provider = EmbeddingProvider.OLLAMA

    async def embed_one(self, text: str) -> list[float]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self.config.base_url}/api/embeddings",
                    headers=self._headers(),
                    json={"model": self.config.model, "prompt": text},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError as exc:
            raise EmbeddingProviderError(
                f"Cannot connect to Ollama at {self.config.base_url}: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            known = translate_provider_error(exc)
            if known is not None:
                raise known from exc
            raise EmbeddingProviderError(
                f"Ollama returned HTTP {exc.response.status_code}: {exc}"
            ) from exc

        embedding = data.get("embedding") or data.get("embeddings")
        if embedding and isinstance(embedding[0], list):
            # Newer servers wrap a single vector in a list
            embedding = embedding[0]
        if not embedding:
            raise EmbeddingProviderError("No embedding returned from Ollama")
        return embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        return [await self.embed_one(text) for text in texts]


def build_embedding_client(
    provider: str | None, config: EmbeddingConfig, timeout: float = 30.0
) -> EmbeddingClient:
    """Pick the client for a stored provider tag, validating the config first."""
    if not provider:
        raise ConfigurationError("Embedding provider not configured.")
    try:
        normalized = EmbeddingProvider.normalize(provider)
    except ValueError as exc:
        raise ConfigurationError(f"Unsupported provider: {provider}") from exc
    if not config.base_url or not config.model:
        raise ConfigurationError("Embedding configuration incomplete.")

    if normalized is EmbeddingProvider.OPENAI_COMPATIBLE:
        return OpenAICompatibleClient(config, timeout=timeout)
    return OllamaClient(config, timeout=timeout)
