"""Tests for embedding generation with a fake OpenAI client."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from concierge.errors import (
    InvalidAPIKeyError,
    InvalidDimension,
    InvalidInput,
    ProviderRateLimitError,
    QuotaExceededError,
    UpstreamProviderError,
)
from concierge.llm.provider_errors import map_openai_error
from concierge.rag.embedding_provider import EmbeddingProvider
from concierge.resilience import CircuitBreaker
from tests.fakes import FakeOpenAI


def rate_limit_error(code: str) -> openai.RateLimitError:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("Rate limited", response=response, body={"code": code, "message": "Rate limited"})


@pytest.fixture
def client(settings):
    return FakeOpenAI(dimension=settings.embedding_dimension)


@pytest.mark.asyncio
async def test_embed_returns_vector_of_configured_dimension(settings, client):
    """Test a single embedding."""
    provider = EmbeddingProvider(settings, client=client)

    vector = await provider.embed("Margherita pizza")

    assert len(vector) == settings.embedding_dimension
    assert client.embeddings.calls == ["Margherita pizza"]


@pytest.mark.asyncio
async def test_empty_text_rejected(settings, client):
    """Test empty input."""
    provider = EmbeddingProvider(settings, client=client)

    with pytest.raises(InvalidInput):
        await provider.embed("   ")

    assert client.embeddings.calls == []


@pytest.mark.asyncio
async def test_concurrent_requests_for_same_text_share_one_call(settings, client):
    """Test duplicate in-flight requests are coalesced."""
    client.embeddings.delay = 0.01
    provider = EmbeddingProvider(settings, client=client)

    first, second = await asyncio.gather(provider.embed("tiramisu"), provider.embed("tiramisu"))

    assert first == second
    assert client.embeddings.calls == ["tiramisu"]
    assert provider.shared_requests == 1


@pytest.mark.asyncio
async def test_retryable_errors_retried_with_backoff(settings, client):
    """Test retry on provider rate limiting."""
    client.embeddings.errors = [ProviderRateLimitError("slow down"), ProviderRateLimitError("slow down")]
    sleep = AsyncMock()
    provider = EmbeddingProvider(settings.model_copy(update={"provider_retry_base_delay": 1.0}),
                                 client=client, sleep=sleep)

    vector = await provider.embed("calzone")

    assert len(vector) == settings.embedding_dimension
    assert len(client.embeddings.calls) == 3
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_quota_error_not_retried(settings, client):
    """Test quota exhaustion surfaces immediately."""
    client.embeddings.fail_with = rate_limit_error("insufficient_quota")
    sleep = AsyncMock()
    provider = EmbeddingProvider(settings, client=client, sleep=sleep)

    with pytest.raises(QuotaExceededError):
        await provider.embed("calzone")

    assert len(client.embeddings.calls) == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_wrong_provider_dimension_rejected(settings, client):
    """Test dimensionality check on the provider response."""
    client.embeddings.vectors["odd"] = [0.1] * 3
    provider = EmbeddingProvider(settings, client=client)

    with pytest.raises(InvalidDimension):
        await provider.embed("odd")


@pytest.mark.asyncio
async def test_unconfigured_provider_raises_invalid_key(settings):
    """Test missing client."""
    provider = EmbeddingProvider(settings)

    with pytest.raises(InvalidAPIKeyError):
        await provider.embed("anything")


@pytest.mark.asyncio
async def test_embed_batch_preserves_order(settings, client):
    """Test batch embedding in chunks."""
    provider = EmbeddingProvider(settings.model_copy(update={"embedding_batch_size": 2}), client=client)
    texts = ["one", "two", "three"]

    vectors = await provider.embed_batch(texts)

    assert len(vectors) == 3
    assert vectors[2] == await provider.embed("three")


@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_failures(settings, client, clock):
    """Test the breaker stops calling a failing provider."""
    client.embeddings.fail_with = QuotaExceededError("quota")
    breaker = CircuitBreaker("embeddings", failure_threshold=2, clock=clock)
    provider = EmbeddingProvider(settings, client=client, breaker=breaker)

    for _ in range(2):
        with pytest.raises(QuotaExceededError):
            await provider.embed("burger")

    with pytest.raises(UpstreamProviderError, match="Circuit breaker open"):
        await provider.embed("burger")
    assert len(client.embeddings.calls) == 2


def test_openai_errors_mapped():
    """Test SDK exception classification."""
    assert isinstance(map_openai_error(rate_limit_error("insufficient_quota")), QuotaExceededError)

    throttled = map_openai_error(rate_limit_error("rate_limit_exceeded"))
    assert isinstance(throttled, ProviderRateLimitError)
    assert throttled.retryable is True

    generic = map_openai_error(RuntimeError("socket closed"))
    assert type(generic) is UpstreamProviderError
    assert generic.retryable is False
