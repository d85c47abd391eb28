import asyncio
import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import httpx
import pytest

from spotter.errors import EmbeddingContentError, EmbeddingProviderError
from spotter.services.embeddings import (
    DisabledEmbeddingProvider,
    EmbeddingCircuitBreaker,
    OpenAIEmbeddingProvider,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _provider(handler):
    provider = OpenAIEmbeddingProvider(api_key="test-key", model="test-model", url="https://embed.test/v1")
    provider._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return provider


def test_breaker_opens_after_threshold_and_cools_down():
    clock = FakeClock()
    breaker = EmbeddingCircuitBreaker(failure_threshold=2, cooldown_seconds=30, clock=clock)
    breaker.record_failure("status 503")
    assert breaker.is_open() is False
    breaker.record_failure("status 503")
    assert breaker.is_open() is True
    assert breaker.status()["consecutive_failures"] == 2

    clock.now += 31
    assert breaker.is_open() is False
    breaker.record_success()
    assert breaker.status()["consecutive_failures"] == 0


def test_vectors_come_back_in_input_order():
    def handler(request):
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    provider = _provider(handler)
    vectors = asyncio.run(provider.embed_batch(["first", "second"]))
    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert provider.status()["circuit_breaker"]["open"] is False


def test_rejected_input_is_a_content_error():
    provider = _provider(lambda request: httpx.Response(400, json={"error": "too long"}))
    with pytest.raises(EmbeddingContentError) as excinfo:
        asyncio.run(provider.embed_batch(["x"]))
    assert excinfo.value.transient is False
    assert provider.circuit_breaker.status()["consecutive_failures"] == 0


def test_open_breaker_short_circuits():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": []})

    provider = _provider(handler)
    for _ in range(provider.circuit_breaker.failure_threshold):
        provider.circuit_breaker.record_failure("boom")
    with pytest.raises(EmbeddingProviderError):
        asyncio.run(provider.embed_batch(["x"]))
    assert calls == []


def test_disabled_provider_always_fails():
    with pytest.raises(EmbeddingProviderError):
        asyncio.run(DisabledEmbeddingProvider("none").embed("hello"))
