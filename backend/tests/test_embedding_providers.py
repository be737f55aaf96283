"""Tests for the embedding provider clients and error translation."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from mediasync.errors import (
    ConfigurationError,
    EmbeddingProviderError,
    InvalidApiKeyError,
    QuotaExceededError,
    RateLimitError,
)
from mediasync.services.embedding_providers import (
    EmbeddingClient,
    EmbeddingConfig,
    OllamaClient,
    OpenAICompatibleClient,
    build_embedding_client,
    translate_provider_error,
)

OPENAI_CONFIG = EmbeddingConfig(
    base_url="https://api.example.com/v1",
    model="text-embedding-3-small",
    dimensions=1536,
    api_key="sk-test",
)
OLLAMA_CONFIG = EmbeddingConfig(
    base_url="http://ollama:11434", model="nomic-embed-text", dimensions=768
)


def _ok(body: dict) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = body
    resp.raise_for_status = MagicMock()
    return resp


def _status_error(status: int, text: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/v1/embeddings")
    response = httpx.Response(status, text=text, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _failing(status: int, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.raise_for_status = MagicMock(side_effect=_status_error(status, text))
    return resp


def _mock_http(mock_client_cls, response=None, side_effect=None) -> AsyncMock:
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_client


# ── Factory ───────────────────────────────────────────────────────────


class TestBuildClient:
    def test_openai_alias(self):
        client = build_embedding_client("openai", OPENAI_CONFIG)
        assert isinstance(client, OpenAICompatibleClient)
        assert client.supports_batch is True

    def test_ollama(self):
        client = build_embedding_client("ollama", OLLAMA_CONFIG)
        assert isinstance(client, OllamaClient)
        assert client.supports_batch is False

    def test_missing_provider(self):
        with pytest.raises(ConfigurationError, match="not configured"):
            build_embedding_client(None, OPENAI_CONFIG)

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unsupported provider: cohere"):
            build_embedding_client("cohere", OPENAI_CONFIG)

    def test_incomplete_config(self):
        with pytest.raises(ConfigurationError, match="incomplete"):
            build_embedding_client("ollama", EmbeddingConfig(base_url="", model="m"))

    def test_base_client_is_abstract(self):
        with pytest.raises(TypeError):
            EmbeddingClient(OPENAI_CONFIG)

    def test_config_payload_round_trip_strips_slash(self):
        config = EmbeddingConfig.from_payload(
            {"baseUrl": "http://ollama:11434/", "model": "m", "dimensions": "768"}
        )
        assert config.base_url == "http://ollama:11434"
        assert config.dimensions == 768
        assert config.api_key is None


# ── OpenAI-compatible ────────────────────────────────────────────────


class TestOpenAICompatible:
    @pytest.mark.asyncio
    async def test_batch_request_shape(self):
        body = {"data": [{"index": 0, "embedding": [0.1]}, {"index": 1, "embedding": [0.2]}]}
        with patch("httpx.AsyncClient") as mock_cls:
            mock_http = _mock_http(mock_cls, _ok(body))
            vectors = await OpenAICompatibleClient(OPENAI_CONFIG).embed_batch(["a", "b"])

        assert vectors == [[0.1], [0.2]]
        args, kwargs = mock_http.post.call_args
        assert args[0] == "https://api.example.com/v1/embeddings"
        assert kwargs["json"] == {
            "model": "text-embedding-3-small",
            "input": ["a", "b"],
            "dimensions": 1536,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_rows_reordered_by_index(self):
        body = {"data": [{"index": 1, "embedding": [2.0]}, {"index": 0, "embedding": [1.0]}]}
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, _ok(body))
            vectors = await OpenAICompatibleClient(OPENAI_CONFIG).embed_batch(["a", "b"])
        assert vectors == [[1.0], [2.0]]

    @pytest.mark.asyncio
    async def test_row_count_mismatch(self):
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, _ok({"data": [{"embedding": [0.1]}]}))
            with pytest.raises(EmbeddingProviderError, match="expected 2 embeddings, got 1"):
                await OpenAICompatibleClient(OPENAI_CONFIG).embed_batch(["a", "b"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "text", "expected"),
        [
            (429, "", RateLimitError),
            (429, '{"error": {"code": "insufficient_quota"}}', QuotaExceededError),
            (401, "", InvalidApiKeyError),
        ],
    )
    async def test_known_http_errors(self, status, text, expected):
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, _failing(status, text))
            with pytest.raises(expected):
                await OpenAICompatibleClient(OPENAI_CONFIG).embed_batch(["a"])

    @pytest.mark.asyncio
    async def test_other_http_error(self):
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, _failing(500, "upstream exploded"))
            with pytest.raises(EmbeddingProviderError, match="HTTP 500"):
                await OpenAICompatibleClient(OPENAI_CONFIG).embed_batch(["a"])

    @pytest.mark.asyncio
    async def test_connect_error(self):
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, side_effect=httpx.ConnectError("refused"))
            with pytest.raises(EmbeddingProviderError, match="Cannot connect"):
                await OpenAICompatibleClient(OPENAI_CONFIG).embed_one("a")


# ── Ollama ────────────────────────────────────────────────────────────


class TestOllama:
    @pytest.mark.asyncio
    async def test_single_prompt(self):
        with patch("httpx.AsyncClient") as mock_cls:
            mock_http = _mock_http(mock_cls, _ok({"embedding": [0.5] * 768}))
            vector = await OllamaClient(OLLAMA_CONFIG).embed_one("Alien")

        assert len(vector) == 768
        args, kwargs = mock_http.post.call_args
        assert args[0] == "http://ollama:11434/api/embeddings"
        assert kwargs["json"] == {"model": "nomic-embed-text", "prompt": "Alien"}
        assert "Authorization" not in kwargs["headers"]

    @pytest.mark.asyncio
    async def test_nested_embeddings_unwrapped(self):
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, _ok({"embeddings": [[0.1, 0.2]]}))
            assert await OllamaClient(OLLAMA_CONFIG).embed_one("x") == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_empty_response(self):
        with patch("httpx.AsyncClient") as mock_cls:
            _mock_http(mock_cls, _ok({}))
            with pytest.raises(EmbeddingProviderError, match="No embedding"):
                await OllamaClient(OLLAMA_CONFIG).embed_one("x")

    @pytest.mark.asyncio
    async def test_batch_falls_back_to_single_calls(self):
        with patch("httpx.AsyncClient") as mock_cls:
            mock_http = _mock_http(mock_cls, _ok({"embedding": [1.0]}))
            vectors = await OllamaClient(OLLAMA_CONFIG).embed_batch(["a", "b", "c"])
        assert vectors == [[1.0], [1.0], [1.0]]
        assert mock_http.post.await_count == 3


def test_translate_unknown_error_is_none():
    assert translate_provider_error(RuntimeError("socket closed")) is None
    assert isinstance(translate_provider_error(RuntimeError("rate_limit hit")), RateLimitError)
