"""
Embedding provider clients.
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from typing import Optional, Sequence

import httpx

import spotter.config as config
from spotter.errors import EmbeddingContentError, EmbeddingProviderError

logger = config.logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
CONTENT_ERROR_STATUS_CODES = {400, 413, 422}


class EmbeddingCircuitBreaker:
    """Stops calling the provider for ``cooldown_seconds`` after repeated failures."""

    def __init__(self, failure_threshold: int, cooldown_seconds: int, clock=time.time):
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = max(1, cooldown_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_at: Optional[float] = None
        self._last_success_at: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return self._clock() < self._open_until

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._open_until = 0.0
            self._last_success_at = self._clock()

    def record_failure(self, error: str) -> None:
        with self._lock:
            now = self._clock()
            self._failures += 1
            self._last_error = error
            self._last_failure_at = now
            if self._failures >= self.failure_threshold:
                self._open_until = now + self.cooldown_seconds
                logger.warning(
                    "embedding_breaker_open",
                    extra={"failures": self._failures, "cooldown_seconds": self.cooldown_seconds},
                )

    def status(self) -> dict:
        def epoch(value: Optional[float]) -> Optional[int]:
            return int(value) if value else None

        with self._lock:
            return {
                "open": self._clock() < self._open_until,
                "consecutive_failures": self._failures,
                "open_until_epoch": epoch(self._open_until),
                "last_error": self._last_error,
                "last_failure_epoch": epoch(self._last_failure_at),
                "last_success_epoch": epoch(self._last_success_at),
            }


class EmbeddingProvider:
    """Batch text -> vector interface. All vectors from one provider share ``model``."""

    name = "base"

    def __init__(self, model: str):
        self.model = model
        self.circuit_breaker = EmbeddingCircuitBreaker(
            failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
            cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
        )

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        raise NotImplementedError

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def aclose(self) -> None:
        return None

    def status(self) -> dict:
        return {
            "provider": self.name,
            "model": self.model,
            "circuit_breaker": self.circuit_breaker.status(),
        }


class DisabledEmbeddingProvider(EmbeddingProvider):
    name = "none"

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        raise EmbeddingProviderError("embedding provider disabled", transient=False)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        url: Optional[str] = None,
    ):
        super().__init__(model or config.EMBEDDING_MODEL)
        self._api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self._url = url or config.EMBEDDING_API_URL
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(config.EMBEDDING_TIMEOUT_SECONDS),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
                headers=headers,
            )
            logger.info("HTTP client initialized")
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client closed")

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        if self.circuit_breaker.is_open():
            _raise_embedding_unavailable("circuit breaker open")
        client = self._get_client()
        for attempt in range(config.EMBEDDING_RETRY_MAX + 1):
            try:
                response = await client.post(
                    self._url,
                    json={"model": self.model, "input": list(texts)},
                )
            except httpx.RequestError as exc:
                if attempt >= config.EMBEDDING_RETRY_MAX:
                    self.circuit_breaker.record_failure(str(exc))
                    _raise_embedding_unavailable(str(exc))
                await _async_sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= config.EMBEDDING_RETRY_MAX:
                    self.circuit_breaker.record_failure(f"status {response.status_code}")
                    _raise_embedding_unavailable(f"status {response.status_code}")
                await _async_sleep_backoff(attempt)
                continue
            if response.status_code in CONTENT_ERROR_STATUS_CODES:
                logger.warning(
                    "embedding_input_rejected",
                    extra={"status": response.status_code, "batch_size": len(texts)},
                )
                raise EmbeddingContentError(f"embedding input rejected (status {response.status_code})")
            if response.status_code >= 400:
                self.circuit_breaker.record_failure(f"status {response.status_code}")
                _raise_embedding_unavailable(f"status {response.status_code}")

            data = response.json()
            self.circuit_breaker.record_success()
            rows = sorted(data["data"], key=lambda row: row.get("index", 0))
            vectors = [row["embedding"] for row in rows]
            if len(vectors) != len(texts):
                raise EmbeddingContentError("embedding response size mismatch")
            return vectors
        _raise_embedding_unavailable("retries exhausted")


def build_embedding_provider() -> EmbeddingProvider:
    if config.EMBEDDING_PROVIDER == "none":
        return DisabledEmbeddingProvider(config.EMBEDDING_MODEL)
    return OpenAIEmbeddingProvider()


def _raise_embedding_unavailable(detail: str) -> None:
    logger.warning("Embedding provider unavailable", extra={"detail": detail})
    raise EmbeddingProviderError("embedding provider unavailable")


async def _async_sleep_backoff(attempt: int) -> None:
    base = config.EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.EMBEDDING_RETRY_JITTER_SECONDS)
    await asyncio.sleep(base + jitter)


__all__ = [
    "EmbeddingCircuitBreaker",
    "EmbeddingProvider",
    "DisabledEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "build_embedding_provider",
]
