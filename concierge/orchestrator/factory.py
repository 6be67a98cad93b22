"""Construct a complete query pipeline wiring"""

import asyncio
from typing import Awaitable, Callable, Optional

import openai
import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict

from ..analytics.analytics_logger import AnalyticsLogger
from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..gateway.business_store import BusinessStore
from ..gateway.rate_limit import RateLimiter
from ..gateway.session_store import SessionStore
from ..gateway.validation import QueryValidator
from ..intent.intent_classifier import IntentClassifier
from ..llm.llm_engine import LLMEngine
from ..llm.prompt_manager import PromptManager
from ..rag.content_indexer import ContentIndexer
from ..rag.content_processor import ContentProcessor
from ..rag.embedding_provider import EmbeddingProvider
from ..rag.retrieval_engine import ContextRetriever
from ..rag.vector_store import EmbeddingIndex
from ..resilience import CircuitBreaker
from ..rules.rule_store import InMemoryRuleStore
from ..rules.rules_engine import BusinessRulesEngine
from .query_pipeline import QueryPipeline


class Components(BaseModel):
    """Everything ``build_pipeline`` wired together, for callers that need direct access"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    settings: Settings
    pipeline: QueryPipeline
    embeddings: EmbeddingProvider
    llm: LLMEngine
    index: EmbeddingIndex
    indexer: ContentIndexer
    businesses: BusinessStore
    sessions: SessionStore
    rate_limiter: RateLimiter
    intent_classifier: IntentClassifier
    retriever: ContextRetriever
    rules_engine: BusinessRulesEngine
    analytics: AnalyticsLogger


def build_pipeline(
    settings: Optional[Settings] = None,
    openai_client: Optional[openai.AsyncOpenAI] = None,
    redis_client: Optional[redis.Redis] = None,
    businesses: Optional[BusinessStore] = None,
    rule_store: Optional[InMemoryRuleStore] = None,
    clock: Optional[Clock] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    embeddings: Optional[EmbeddingProvider] = None,
    llm: Optional[LLMEngine] = None,
) -> Components:
    """Build fresh instances of every component; nothing is shared with other wirings"""
    settings = settings or default_settings
    clock = clock or system_clock

    embeddings = embeddings or EmbeddingProvider(
        settings=settings,
        client=openai_client,
        breaker=CircuitBreaker("embeddings", clock=clock),
        sleep=sleep,
    )
    llm = llm or LLMEngine(settings=settings, client=openai_client, clock=clock, sleep=sleep)
    prompts = PromptManager()

    index = EmbeddingIndex(settings=settings, clock=clock)
    processor = ContentProcessor(settings=settings)
    indexer = ContentIndexer(processor, embeddings, index)

    businesses = businesses or BusinessStore()
    sessions = SessionStore(settings=settings, clock=clock)
    rate_limiter = RateLimiter(settings=settings, clock=clock)
    validator = QueryValidator(settings=settings)

    intent_classifier = IntentClassifier(settings=settings, llm=llm, prompts=prompts, clock=clock)
    retriever = ContextRetriever(
        index,
        embeddings,
        business_store=businesses,
        session_store=sessions,
        settings=settings,
        clock=clock,
    )
    rules_engine = BusinessRulesEngine(store=rule_store or InMemoryRuleStore(), settings=settings, clock=clock)
    analytics = AnalyticsLogger(settings=settings, redis_client=redis_client)

    pipeline = QueryPipeline(
        validator=validator,
        rate_limiter=rate_limiter,
        sessions=sessions,
        businesses=businesses,
        intent_classifier=intent_classifier,
        retriever=retriever,
        rules_engine=rules_engine,
        llm=llm,
        prompts=prompts,
        analytics=analytics,
        settings=settings,
        clock=clock,
    )

    return Components(
        settings=settings,
        pipeline=pipeline,
        embeddings=embeddings,
        llm=llm,
        index=index,
        indexer=indexer,
        businesses=businesses,
        sessions=sessions,
        rate_limiter=rate_limiter,
        intent_classifier=intent_classifier,
        retriever=retriever,
        rules_engine=rules_engine,
        analytics=analytics,
    )


async def initialize(components: Components):
    """Open provider clients for a wiring built without injected ones"""
    await components.embeddings.initialize()
    await components.llm.initialize()
    await components.analytics.initialize()
