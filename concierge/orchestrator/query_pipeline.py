"""Query pipeline: validation through generation, with per-step metrics and graceful degradation"""

import asyncio
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union
import structlog

from ..analytics.analytics_logger import AnalyticsLogger
from ..analytics.models import QueryLogRecord, QueryStatus
from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import (
    ConciergeError,
    InternalError,
    PipelineTimeoutError,
    RateLimitError,
    ValidationError,
)
from ..gateway.business_store import BusinessStore
from ..gateway.models import Session
from ..gateway.rate_limit import RateLimiter
from ..gateway.session_store import SessionStore
from ..gateway.validation import QueryValidator
from ..intent.intent_classifier import IntentClassifier
from ..intent.models import IntentResult
from ..llm.llm_engine import LLMEngine
from ..llm.models import TokenUsage
from ..llm.prompt_manager import PromptManager
from ..llm.responses import BLOCKED_RESPONSE, fallback_response, suggestions_for
from ..metrics import record_query, record_step
from ..rag.models import BusinessFacts, ContextBundle
from ..rag.retrieval_engine import ContextRetriever
from ..rules.models import ResponseDirectives, RuleEvaluationContext, RuleEvaluationResult
from ..rules.rules_engine import BusinessRulesEngine
from .models import PipelineStage, ProcessingStep, QueryRequest, QueryResponse, StreamEvent
from .streaming import StreamChannel

logger = structlog.get_logger(__name__)

FALLBACK_CONFIDENCE = 0.3


class PipelineRun:
    """State of one query: current stage, step log and degraded stages.

    Owned by a single task and discarded after logging.
    """

    def __init__(self, business_id: str, request: QueryRequest, clock: Clock, mode: str):
        self.business_id = business_id
        self.request = request
        self.clock = clock
        self.mode = mode
        self.stage = PipelineStage.VALIDATING
        self.steps: List[ProcessingStep] = []
        self.degraded: List[str] = []
        self.started = clock.now()
        self.session_id: Optional[str] = request.session_id
        self.intent: Optional[IntentResult] = None
        self.context: Optional[ContextBundle] = None

    async def step(self, stage: PipelineStage, operation: Callable[[], Union[Any, Awaitable[Any]]]) -> Any:
        """Run one stage, recording its timing and outcome"""
        self.stage = stage
        start = self.clock.now()
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._record(stage, start, success=False, error=str(e) or type(e).__name__)
            raise
        self._record(stage, start, success=True)
        return result

    async def degradable(
        self,
        stage: PipelineStage,
        operation: Callable[[], Union[Any, Awaitable[Any]]],
        fallback: Callable[[], Any],
    ) -> Any:
        """Run a stage whose failure is replaced by ``fallback()``"""
        try:
            return await self.step(stage, operation)
        except Exception as e:
            self.degraded.append(stage.value)
            logger.warning("Pipeline stage degraded",
                           stage=stage.value,
                           business_id=self.business_id,
                           query=self.request.query[:100],
                           error=str(e),
                           elapsed_ms=self.elapsed_ms())
            return fallback()

    def elapsed_ms(self) -> float:
        return (self.clock.now() - self.started) * 1000

    def _record(self, stage: PipelineStage, start: float, success: bool, error: Optional[str] = None):
        end = self.clock.now()
        self.steps.append(ProcessingStep(
            step_name=stage.value,
            start=start,
            end=end,
            duration_ms=(end - start) * 1000,
            success=success,
            error=error,
        ))
        record_step(stage.value, end - start, success)


class QueryPipeline:
    """Answer customer queries for a business.

    Validation and rate limiting failures abort the query. Intent
    classification, context retrieval, rule evaluation and generation
    degrade to a documented fallback so the customer still gets an answer.
    The whole run is bounded by ``processing_timeout_seconds``.
    """

    def __init__(
        self,
        validator: QueryValidator,
        rate_limiter: RateLimiter,
        sessions: SessionStore,
        businesses: BusinessStore,
        intent_classifier: IntentClassifier,
        retriever: ContextRetriever,
        rules_engine: BusinessRulesEngine,
        llm: LLMEngine,
        prompts: Optional[PromptManager] = None,
        analytics: Optional[AnalyticsLogger] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.businesses = businesses
        self.intent_classifier = intent_classifier
        self.retriever = retriever
        self.rules_engine = rules_engine
        self.llm = llm
        self.prompts = prompts or PromptManager()
        self.analytics = analytics
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.total_queries = 0

    async def process_query(self, business_id: str, request: QueryRequest) -> QueryResponse:
        """Single-shot answer"""
        run = PipelineRun(business_id, request, self.clock, mode="single")
        return await self._execute(run)

    async def process_streaming_query(self, business_id: str, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        """Yield ``chunk`` events as the answer is generated, then ``done`` or ``error``.

        Closing this iterator, or cancelling the task consuming it, cancels
        the producer and releases the provider stream before returning.
        """
        run = PipelineRun(business_id, request, self.clock, mode="stream")
        channel = StreamChannel()
        producer = asyncio.create_task(self._produce(run, channel))

        try:
            async for event in channel:
                yield event
        finally:
            channel.close()
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    logger.info("Streaming query cancelled",
                                business_id=business_id,
                                stage=run.stage.value,
                                chunks_sent=channel.sent)

    async def _produce(self, run: PipelineRun, channel: StreamChannel):
        try:
            response = await self._execute(run, channel)
            await channel.send(StreamEvent.done(response))
        except ConciergeError as e:
            await channel.send(StreamEvent.error(e.to_dict()))
        finally:
            channel.close()

    async def _execute(self, run: PipelineRun, channel: Optional[StreamChannel] = None) -> QueryResponse:
        self.total_queries += 1
        try:
            response = await asyncio.wait_for(
                self._run(run, channel),
                timeout=self.settings.processing_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = PipelineTimeoutError(
                f"Query processing exceeded {self.settings.processing_timeout_seconds} seconds"
            )
            self._fail(run, error, QueryStatus.TIMEOUT)
            raise error
        except ValidationError as e:
            self._fail(run, e, QueryStatus.VALIDATION_ERROR)
            raise
        except RateLimitError as e:
            self._fail(run, e, QueryStatus.RATE_LIMITED)
            raise
        except ConciergeError as e:
            self._fail(run, e, QueryStatus.ERROR)
            raise
        except Exception as e:
            logger.exception("Unexpected pipeline failure",
                             business_id=run.business_id,
                             stage=run.stage.value,
                             query=run.request.query[:100])
            error = InternalError(str(e))
            self._fail(run, error, QueryStatus.ERROR)
            raise error from e

        record_query("success", run.elapsed_ms() / 1000, mode=run.mode)
        return response

    async def _run(self, run: PipelineRun, channel: Optional[StreamChannel]) -> QueryResponse:
        request = run.request
        business_id = run.business_id

        query = await run.step(
            PipelineStage.VALIDATING,
            lambda: self.validator.validate_request(request.query, request.session_id, request.customer_id),
        )

        client_id = request.client_id or request.customer_id or request.session_id or "anonymous"
        await run.step(PipelineStage.RATE_LIMITING, lambda: self.rate_limiter.enforce(business_id, client_id))

        business, session = await run.step(
            PipelineStage.SESSION_RESOLVING,
            lambda: self._resolve_session(business_id, request),
        )
        run.session_id = session.session_id

        intent = await run.degradable(
            PipelineStage.INTENT_CLASSIFYING,
            lambda: self.intent_classifier.classify(query),
            lambda: IntentResult.unknown("Intent classification failed"),
        )
        run.intent = intent

        context = await run.degradable(
            PipelineStage.CONTEXT_RETRIEVING,
            lambda: self.retriever.retrieve(business_id, query[:self.settings.max_retrieval_query_length],
                                            session.session_id),
            lambda: ContextBundle.empty(business_id, query),
        )
        run.context = context

        evaluation = await run.degradable(
            PipelineStage.RULES_EVALUATING,
            lambda: self._evaluate_rules(business_id, query, request, session, intent, context),
            RuleEvaluationResult,
        )
        directives = evaluation.directives()

        text, usage, generated = await self._generate(run, business, query, intent, context, directives, channel)
        confidence = self._response_confidence(text, intent, context) if generated else FALLBACK_CONFIDENCE

        response = QueryResponse(
            response=text,
            confidence=confidence,
            intent=intent.intent.value,
            intent_source=intent.source,
            session_id=session.session_id,
            sources=context.source_ids(),
            context_sources=context.sources(),
            suggestions=suggestions_for(intent.intent.value),
            usage=usage,
            applied_actions=evaluation.applied_actions,
            escalated=directives.escalate,
            blocked=directives.block,
            degraded_stages=list(run.degraded),
            metadata={
                "model": self.settings.generation_model if generated else None,
                "intent_confidence": intent.confidence,
                "failed_sources": context.failed_sources,
                "context_counts": context.counts(),
                "conflicts_resolved": evaluation.conflicts_resolved,
            },
        )

        await run.step(PipelineStage.LOGGING, lambda: self._log_success(run, response, generated))

        run.stage = PipelineStage.DONE
        response.processing_time_ms = run.elapsed_ms()
        response.steps = list(run.steps)

        logger.info("Query processed",
                    business_id=business_id,
                    session_id=session.session_id,
                    intent=response.intent,
                    degraded=run.degraded,
                    processing_time_ms=response.processing_time_ms)
        return response

    async def _resolve_session(self, business_id: str, request: QueryRequest):
        business = await self.businesses.get_business(business_id)
        session = await self.sessions.get_or_create(business_id, request.session_id, request.customer_id)
        return business, session

    async def _evaluate_rules(
        self,
        business_id: str,
        query: str,
        request: QueryRequest,
        session: Session,
        intent: IntentResult,
        context: ContextBundle,
    ) -> RuleEvaluationResult:
        customer_context = {
            "customer_id": request.customer_id,
            "is_returning": session.turn_count > 0,
            **request.customer_context,
        }
        rule_context = RuleEvaluationContext(
            business_id=business_id,
            query_text=query,
            intent=intent.intent.value,
            intent_confidence=intent.confidence,
            customer_context=customer_context,
            conversation_context={
                "turn_count": session.turn_count,
                "previous_topics": list(session.previous_topics),
                "history_length": len(context.conversation_history),
            },
            business_context=await self.businesses.get_facts(business_id),
            retrieval={
                "sources": context.sources(),
                "counts": context.counts(),
                "average_confidence": context.average_confidence(),
            },
        )
        return await self.rules_engine.evaluate(rule_context)

    async def _generate(
        self,
        run: PipelineRun,
        business: BusinessFacts,
        query: str,
        intent: IntentResult,
        context: ContextBundle,
        directives: ResponseDirectives,
        channel: Optional[StreamChannel],
    ):
        """Return (text, usage, generated); generated is False when a fallback answer was used"""
        if directives.block:
            text = directives.block_message or BLOCKED_RESPONSE
            await run.step(PipelineStage.GENERATING, lambda: self._emit(channel, text))
            return text, TokenUsage(), True

        system_prompt = self.prompts.get_system_prompt(business, context, intent.intent.value, directives)
        messages = self.prompts.build_messages(system_prompt, context.conversation_history, query)
        streamed: List[str] = []

        async def generate():
            if channel is None:
                result = await self.llm.complete(messages)
                return result.text, result.usage

            usage = TokenUsage()
            async for chunk in self.llm.stream(messages):
                if chunk.usage is not None:
                    usage = chunk.usage
                if chunk.text:
                    streamed.append(chunk.text)
                    await channel.send(StreamEvent.chunk(chunk.text))
            return "".join(streamed), usage

        try:
            text, usage = await run.step(PipelineStage.GENERATING, generate)
        except Exception as e:
            if streamed:
                # Chunks already reached the client; surface the failure as a terminal error event
                raise

            run.degraded.append(PipelineStage.GENERATING.value)
            logger.warning("Generation failed, using fallback answer",
                           business_id=run.business_id,
                           intent=intent.intent.value,
                           error=str(e),
                           query=query[:100])
            text = fallback_response(intent.intent.value, business.name)
            await self._emit(channel, text)
            return text, TokenUsage(), False

        if not text.strip():
            run.degraded.append(PipelineStage.GENERATING.value)
            text = fallback_response(intent.intent.value, business.name)
            await self._emit(channel, text)
            return text, usage, False

        disclaimers = [d for d in directives.disclaimers if d not in text]
        if disclaimers:
            suffix = " " + " ".join(disclaimers)
            text = text.rstrip() + suffix
            await self._emit(channel, suffix)

        return text, usage, True

    @staticmethod
    async def _emit(channel: Optional[StreamChannel], text: str):
        if channel is not None and text:
            await channel.send(StreamEvent.chunk(text))

    @staticmethod
    def _response_confidence(text: str, intent: IntentResult, context: ContextBundle) -> float:
        matches = context.embedding_matches.total()
        confidence = intent.confidence
        if matches:
            confidence = (intent.confidence + context.average_confidence()) / 2

        if len(text) < 20:
            confidence *= 0.6
        elif len(text) > 1000:
            confidence *= 0.8
        return max(0.0, min(1.0, confidence))

    async def _log_success(self, run: PipelineRun, response: QueryResponse, generated: bool):
        if generated and not response.blocked:
            try:
                await self.sessions.append_turn(
                    run.business_id, response.session_id, "user", run.request.query, intent=response.intent
                )
                await self.sessions.append_turn(run.business_id, response.session_id, "assistant", response.response)
            except ConciergeError as e:
                logger.error("Could not store conversation turns",
                             business_id=run.business_id,
                             session_id=response.session_id,
                             error=str(e))

        self._log_analytics(run, QueryStatus.SUCCESS, response=response)

    def _fail(self, run: PipelineRun, error: ConciergeError, status: QueryStatus):
        failed_stage = run.stage
        run.stage = PipelineStage.FAILED
        record_query(status.value.lower(), run.elapsed_ms() / 1000, mode=run.mode)

        logger.error("Query failed",
                     business_id=run.business_id,
                     stage=failed_stage.value,
                     status=status.value,
                     error=error.message,
                     query=run.request.query[:100],
                     steps=[(s.step_name, round(s.duration_ms, 2), s.success) for s in run.steps],
                     elapsed_ms=run.elapsed_ms())

        self._log_analytics(run, status, error=error)

    def _log_analytics(
        self,
        run: PipelineRun,
        status: QueryStatus,
        response: Optional[QueryResponse] = None,
        error: Optional[ConciergeError] = None,
    ):
        if self.analytics is None:
            return

        metadata: Dict[str, Any] = {"mode": run.mode, "degraded_stages": list(run.degraded)}
        if response is not None:
            metadata["context_sources"] = response.context_sources
            metadata["escalated"] = response.escalated

        record = QueryLogRecord(
            business_id=run.business_id,
            session_id=run.session_id,
            query_text=run.request.query,
            intent=run.intent.intent.value if run.intent else None,
            confidence=run.intent.confidence if run.intent else 0.0,
            context_counts=run.context.counts() if run.context else {},
            processing_time_ms=run.elapsed_ms(),
            status=status,
            tokens=response.usage.total_tokens if response else 0,
            cost=response.usage.cost if response else 0.0,
            error_message=error.message if error else None,
            metadata=metadata,
        )
        try:
            self.analytics.log_query(record)
        except Exception as e:
            logger.error("Analytics logging failed", business_id=run.business_id, error=str(e))

    async def health_check(self) -> Dict[str, Any]:
        checks = {
            "embeddings": await self.retriever.embeddings.health_check(),
            "index": await self.retriever.index.health_check(),
            "generation": await self.llm.health_check(),
        }
        if self.analytics is not None:
            checks["analytics"] = await self.analytics.health_check()
        return checks
