"""Embedding generation through the OpenAI embeddings API"""

import asyncio
import hashlib
from typing import Awaitable, Callable, Dict, List, Optional

import openai
import structlog

from ..config import Settings, settings as default_settings
from ..errors import InvalidAPIKeyError, InvalidDimension, InvalidInput
from ..llm.provider_errors import map_openai_error
from ..metrics import record_provider_call
from ..resilience import CircuitBreaker, retry_with_backoff

logger = structlog.get_logger(__name__)


class EmbeddingProvider:
    """Turns text into fixed-length vectors.

    Concurrent requests for the same text share one upstream call.
    Retryable provider failures are retried with exponential backoff;
    everything else surfaces as a typed ``UpstreamProviderError``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or default_settings
        self.client = client
        self.breaker = breaker or CircuitBreaker("embeddings")
        self.sleep = sleep
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.total_requests = 0
        self.shared_requests = 0

    async def initialize(self):
        """Create the OpenAI client when an API key is configured"""
        if self.client is None and self.settings.openai_api_key:
            self.client = openai.AsyncOpenAI(api_key=self.settings.openai_api_key)
            logger.info("Embedding provider initialized", model=self.settings.embedding_model)

    async def embed(self, text: str) -> List[float]:
        """Generate the embedding for one text"""
        if not text or not text.strip():
            raise InvalidInput(["Text to embed must not be empty"])

        key = self._request_key(text)
        task = self._in_flight.get(key)

        if task is None:
            task = asyncio.ensure_future(self._embed_with_retry(text))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        else:
            self.shared_requests += 1

        # Shielded so one caller giving up does not cancel the shared request
        return await asyncio.shield(task)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts, ``embedding_batch_size`` requests at a time"""
        vectors: List[List[float]] = []
        batch_size = self.settings.embedding_batch_size

        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            vectors.extend(await asyncio.gather(*(self.embed(text) for text in batch)))

        return vectors

    async def _embed_with_retry(self, text: str) -> List[float]:
        return await retry_with_backoff(
            lambda: self.breaker.call(lambda: self._embed_once(text)),
            attempts=self.settings.provider_retry_attempts,
            base_delay=self.settings.provider_retry_base_delay,
            operation_name="embedding",
            sleep=self.sleep,
        )

    async def _embed_once(self, text: str) -> List[float]:
        if self.client is None:
            raise InvalidAPIKeyError("Embedding provider is not configured")

        self.total_requests += 1
        try:
            response = await self.client.embeddings.create(
                model=self.settings.embedding_model,
                input=text,
            )
        except Exception as e:
            error = map_openai_error(e, "embedding")
            record_provider_call("openai", "embedding", error.code)
            logger.error("Embedding request failed",
                         error=str(e),
                         retryable=error.retryable,
                         text=text[:100])
            raise error from e

        vector = list(response.data[0].embedding)
        if len(vector) != self.settings.embedding_dimension:
            raise InvalidDimension(self.settings.embedding_dimension, len(vector))

        usage = getattr(response, "usage", None)
        record_provider_call("openai", "embedding", "success",
                             tokens=getattr(usage, "total_tokens", 0) or 0)
        return vector

    def _request_key(self, text: str) -> str:
        return hashlib.sha256(f"{self.settings.embedding_model}|{text}".encode()).hexdigest()

    async def health_check(self) -> Dict[str, str]:
        return {
            "status": "healthy" if self.client is not None else "unconfigured",
            "model": self.settings.embedding_model,
            "breaker": self.breaker.state,
        }
