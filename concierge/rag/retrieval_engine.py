"""Context retrieval: parallel semantic search, business facts and conversation history"""

import asyncio
from typing import Any, Dict, List, Optional
import structlog

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import InvalidInput
from ..gateway.business_store import BusinessStore
from ..gateway.session_store import SessionStore
from ..metrics import record_retrieval, record_retrieval_failure
from .embedding_provider import EmbeddingProvider
from .models import (
    ContentType,
    ContextBundle,
    ContextMatch,
    EmbeddingMatches,
    FaqMatch,
    MenuMatch,
    PolicyMatch,
    SearchMatch,
)
from .vector_store import EmbeddingIndex

logger = structlog.get_logger(__name__)

BUCKETS = {
    ContentType.MENU: "menu",
    ContentType.POLICY: "policy",
    ContentType.FAQ: "faq",
}


class ContextRetriever:
    """Build the ContextBundle for one query.

    The query embedding is the only hard dependency: every other lookup
    that fails leaves its part of the bundle empty and is named in
    ``failed_sources``.
    """

    def __init__(
        self,
        index: EmbeddingIndex,
        embeddings: EmbeddingProvider,
        business_store: Optional[BusinessStore] = None,
        session_store: Optional[SessionStore] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.index = index
        self.embeddings = embeddings
        self.business_store = business_store
        self.session_store = session_store
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.total_retrievals = 0

    async def retrieve(
        self,
        business_id: str,
        query: str,
        session_id: Optional[str] = None,
        content_types: Optional[List[ContentType]] = None,
    ) -> ContextBundle:
        start_time = self.clock.now()
        self.validate_query(query)

        query_vector = await self.embeddings.embed(query)

        content_types = content_types or list(BUCKETS)
        lookups: Dict[str, Any] = {
            BUCKETS[content_type]: self.index.search(
                business_id,
                query_vector,
                content_type=content_type,
                limit=self.settings.max_items_per_source,
                min_score=self.settings.similarity_threshold,
            )
            for content_type in content_types
        }
        if self.business_store is not None:
            lookups["business_data"] = self.business_store.get_business(business_id)
        if self.session_store is not None and session_id:
            lookups["conversation"] = self.session_store.get_history(
                business_id, session_id, limit=self.settings.conversation_history_limit
            )

        results = await asyncio.gather(*lookups.values(), return_exceptions=True)

        bundle = ContextBundle(business_id=business_id, query=query)
        matches: Dict[str, List[ContextMatch]] = {}

        for name, result in zip(lookups, results):
            if isinstance(result, Exception):
                bundle.failed_sources.append(name)
                record_retrieval_failure(name)
                logger.warning("Context lookup failed",
                               source=name,
                               business_id=business_id,
                               error=str(result),
                               query=query[:100])
                continue
            if isinstance(result, BaseException):
                raise result

            if name == "business_data":
                bundle.business_facts = result
            elif name == "conversation":
                bundle.conversation_history = list(result)
            else:
                matches[name] = sorted(
                    (self._to_context_match(match, query) for match in result),
                    key=lambda m: m.confidence,
                    reverse=True,
                )
                record_retrieval(name, len(matches[name]))

        bundle.embedding_matches = EmbeddingMatches(**matches)
        bundle.retrieval_time_ms = (self.clock.now() - start_time) * 1000
        self.total_retrievals += 1

        logger.info("Context retrieved",
                    business_id=business_id,
                    counts=bundle.counts(),
                    failed_sources=bundle.failed_sources,
                    retrieval_time_ms=bundle.retrieval_time_ms)
        return bundle

    def validate_query(self, query: str):
        if not query or not query.strip():
            raise InvalidInput(["Query cannot be empty"])
        if len(query) > self.settings.max_retrieval_query_length:
            raise InvalidInput([
                f"Query too long (max {self.settings.max_retrieval_query_length} characters)"
            ])

    def calculate_confidence(self, match: SearchMatch, query: str) -> float:
        """Similarity boosted by literal query hits in the content or title"""
        confidence = match.similarity
        query_lower = query.lower()

        if query_lower in match.content.lower():
            confidence += 0.1

        title = match.metadata.get("title")
        if title and query_lower in str(title).lower():
            confidence += 0.15

        if match.content_type == ContentType.FAQ:
            confidence += 0.05

        return min(max(confidence, 0.0), 1.0)

    def generate_snippet(self, content: str, query: str) -> str:
        max_length = self.settings.max_context_length
        if len(content) <= max_length:
            return content

        query_index = content.lower().find(query.lower())
        if query_index == -1:
            return content[:max_length] + "..."

        start = max(0, query_index - max_length // 2)
        end = min(len(content), start + max_length)
        snippet = content[start:end]

        if start > 0:
            snippet = "..." + snippet
        if end < len(content):
            snippet = snippet + "..."
        return snippet

    def _to_context_match(self, match: SearchMatch, query: str) -> ContextMatch:
        common = {
            "content_id": match.content_id,
            "content": match.content,
            "snippet": self.generate_snippet(match.content, query),
            "similarity": match.similarity,
            "confidence": self.calculate_confidence(match, query),
            "metadata": match.metadata,
        }
        metadata = match.metadata

        if match.content_type == ContentType.MENU:
            return MenuMatch(
                **common,
                name=metadata.get("title"),
                price=metadata.get("price"),
                category=metadata.get("category"),
                allergens=metadata.get("allergens") or [],
            )
        if match.content_type == ContentType.POLICY:
            return PolicyMatch(
                **common,
                title=metadata.get("title"),
                policy_type=metadata.get("policy_type"),
            )
        if match.content_type == ContentType.FAQ:
            return FaqMatch(
                **common,
                question=metadata.get("question"),
                answer=metadata.get("answer"),
            )
        raise ValueError(f"No context bucket for content type {match.content_type}")
