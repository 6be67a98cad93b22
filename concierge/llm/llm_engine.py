"""Text generation through the OpenAI chat completions API"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
import structlog
import openai

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import InvalidAPIKeyError, UpstreamProviderError
from ..metrics import record_provider_call
from ..resilience import CircuitBreaker, retry_with_backoff
from .models import ChatMessage, GenerationChunk, GenerationResult, TokenUsage, to_openai_messages
from .provider_errors import map_openai_error

logger = structlog.get_logger(__name__)


class LLMEngine:
    """Single-shot and streamed chat completions with usage accounting"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or default_settings
        self.client = client
        self.clock = clock or system_clock
        self.breaker = breaker or CircuitBreaker("generation", clock=self.clock)
        self.sleep = sleep
        self.total_generations = 0
        self.total_tokens = 0
        self.total_cost = 0.0

    async def initialize(self):
        if self.client is None and self.settings.openai_api_key:
            self.client = openai.AsyncOpenAI(api_key=self.settings.openai_api_key)
            logger.info("OpenAI provider initialized", model=self.settings.generation_model)

    async def complete(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        operation: str = "generation",
    ) -> GenerationResult:
        """Generate one full answer"""
        start_time = self.clock.now()
        kwargs = self._request_kwargs(messages, model, max_tokens, temperature)

        response = await retry_with_backoff(
            lambda: self.breaker.call(lambda: self._create(kwargs, operation)),
            attempts=self.settings.provider_retry_attempts,
            base_delay=self.settings.provider_retry_base_delay,
            operation_name=operation,
            sleep=self.sleep,
        )

        choice = response.choices[0] if response.choices else None
        text = (choice.message.content if choice and choice.message else None) or ""
        usage = self.calculate_usage(getattr(response, "usage", None))
        self._track(usage, operation)

        generation_time = (self.clock.now() - start_time) * 1000
        logger.info("Text generation completed",
                    model=kwargs["model"],
                    operation=operation,
                    tokens=usage.total_tokens,
                    generation_time_ms=generation_time)

        return GenerationResult(
            text=text,
            model=kwargs["model"],
            usage=usage,
            finish_reason=choice.finish_reason if choice else None,
            generation_time_ms=generation_time,
        )

    async def stream(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[GenerationChunk]:
        """Yield answer chunks as the provider produces them.

        The provider stream is closed whenever iteration stops, including
        when the consumer calls ``aclose()`` or is cancelled.
        """
        kwargs = self._request_kwargs(messages, model, max_tokens, temperature)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        stream = await retry_with_backoff(
            lambda: self.breaker.call(lambda: self._create(kwargs, "stream")),
            attempts=self.settings.provider_retry_attempts,
            base_delay=self.settings.provider_retry_base_delay,
            operation_name="stream",
            sleep=self.sleep,
        )

        try:
            async for event in stream:
                usage = None
                if getattr(event, "usage", None):
                    usage = self.calculate_usage(event.usage)
                    self._track(usage, "stream")

                if not event.choices:
                    if usage is not None:
                        yield GenerationChunk(usage=usage)
                    continue

                choice = event.choices[0]
                text = (choice.delta.content if choice.delta else None) or ""
                if text or choice.finish_reason or usage is not None:
                    yield GenerationChunk(text=text, finish_reason=choice.finish_reason, usage=usage)
        except UpstreamProviderError:
            raise
        except Exception as e:
            error = map_openai_error(e, "stream")
            record_provider_call("openai", "stream", error.code)
            logger.error("Generation stream failed", error=str(e))
            raise error from e
        finally:
            await stream.close()
            logger.debug("Generation stream closed")

    def calculate_usage(self, usage: Any) -> TokenUsage:
        if usage is None:
            return TokenUsage()

        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=getattr(usage, "total_tokens", 0) or prompt_tokens + completion_tokens,
            cost=self.calculate_cost(prompt_tokens, completion_tokens),
        )

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        prompt_cost = (prompt_tokens / 1000) * self.settings.input_cost_per_1k
        completion_cost = (completion_tokens / 1000) * self.settings.output_cost_per_1k
        return prompt_cost + completion_cost

    async def _create(self, kwargs: Dict[str, Any], operation: str):
        if self.client is None:
            raise InvalidAPIKeyError("Generation provider is not configured")

        try:
            return await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            error = map_openai_error(e, operation)
            record_provider_call("openai", operation, error.code)
            logger.error("Generation request failed",
                         operation=operation,
                         error=str(e),
                         retryable=error.retryable)
            raise error from e

    def _request_kwargs(
        self,
        messages: List[ChatMessage],
        model: Optional[str],
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        return {
            "model": model or self.settings.generation_model,
            "messages": to_openai_messages(messages),
            "max_tokens": max_tokens or self.settings.max_tokens,
            "temperature": self.settings.temperature if temperature is None else temperature,
        }

    def _track(self, usage: TokenUsage, operation: str):
        self.total_generations += 1
        self.total_tokens += usage.total_tokens
        self.total_cost += usage.cost
        record_provider_call("openai", operation, "success", tokens=usage.total_tokens)

    async def health_check(self) -> Dict[str, str]:
        return {
            "status": "healthy" if self.client is not None else "unconfigured",
            "model": self.settings.generation_model,
            "breaker": self.breaker.state,
        }
