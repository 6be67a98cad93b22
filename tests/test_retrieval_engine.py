"""Tests for context retrieval."""

from unittest.mock import AsyncMock

import pytest

from concierge.errors import InvalidInput, QuotaExceededError
from concierge.rag.models import ContentItem, ContentType, SearchMatch
from concierge.rag.retrieval_engine import ContextRetriever


async def index_sample_content(components, business_id="biz-1"):
    items = [
        ContentItem(business_id=business_id, content_type=ContentType.MENU, content_id="lasagna",
                    raw_fields={"name": "Lasagna", "description": "Baked pasta with beef ragu", "price": 16}),
        ContentItem(business_id=business_id, content_type=ContentType.MENU, content_id="tiramisu",
                    raw_fields={"name": "Tiramisu", "description": "Coffee soaked dessert", "price": 8}),
        ContentItem(business_id=business_id, content_type=ContentType.POLICY, content_id="reservations",
                    raw_fields={"title": "Reservations", "content": "Tables are held for 15 minutes"}),
        ContentItem(business_id=business_id, content_type=ContentType.FAQ, content_id="parking",
                    raw_fields={"question": "Is there parking?", "answer": "Free parking behind the building"}),
    ]
    results = await components.indexer.index_batch(items)
    assert all(r.success for r in results)


@pytest.mark.asyncio
async def test_retrieve_fills_typed_buckets(components):
    """Test parallel lookups merge into typed buckets."""
    await index_sample_content(components)

    bundle = await components.retriever.retrieve("biz-1", "lasagna")

    menu = bundle.embedding_matches.menu
    assert {m.content_id for m in menu} == {"lasagna", "tiramisu"}
    confidences = [m.confidence for m in menu]
    assert confidences == sorted(confidences, reverse=True)

    lasagna = next(m for m in menu if m.content_id == "lasagna")
    assert lasagna.name == "Lasagna"
    assert lasagna.price == 16.0
    assert lasagna.confidence == pytest.approx(min(1.0, lasagna.similarity + 0.25))
    assert [m.content_id for m in bundle.embedding_matches.policy] == ["reservations"]
    assert [m.content_id for m in bundle.embedding_matches.faq] == ["parking"]
    assert bundle.business_facts.name == "Luigi's Trattoria"
    assert bundle.failed_sources == []
    assert bundle.sources() == ["menu", "policies", "faqs", "business_data"]


@pytest.mark.asyncio
async def test_conversation_history_included(components):
    """Test the session history lookup."""
    session = await components.sessions.get_or_create("biz-1")
    await components.sessions.append_turn("biz-1", session.session_id, "user", "Hi there")

    bundle = await components.retriever.retrieve("biz-1", "lasagna", session_id=session.session_id)

    assert [turn.content for turn in bundle.conversation_history] == ["Hi there"]
    assert "conversation" in bundle.sources()


@pytest.mark.asyncio
async def test_failed_sub_lookup_leaves_bucket_empty(components):
    """Test one failing search does not fail retrieval."""
    await index_sample_content(components)
    real_search = components.index.search

    async def flaky_search(business_id, vector, content_type=None, **kwargs):
        if content_type == ContentType.MENU:
            raise RuntimeError("index partition unavailable")
        return await real_search(business_id, vector, content_type=content_type, **kwargs)

    components.index.search = flaky_search

    bundle = await components.retriever.retrieve("biz-1", "lasagna")

    assert bundle.embedding_matches.menu == []
    assert bundle.failed_sources == ["menu"]
    assert [m.content_id for m in bundle.embedding_matches.policy] == ["reservations"]


@pytest.mark.asyncio
async def test_unknown_business_only_loses_business_data(components):
    """Test a missing business degrades to no facts."""
    bundle = await components.retriever.retrieve("biz-unknown", "lasagna")

    assert bundle.business_facts is None
    assert bundle.failed_sources == ["business_data"]


@pytest.mark.asyncio
async def test_query_embedding_failure_propagates(settings, components):
    """Test retrieval fails only when the query cannot be embedded."""
    embeddings = AsyncMock()
    embeddings.embed = AsyncMock(side_effect=QuotaExceededError("quota"))
    retriever = ContextRetriever(components.index, embeddings, settings=settings)

    with pytest.raises(QuotaExceededError):
        await retriever.retrieve("biz-1", "lasagna")


@pytest.mark.asyncio
async def test_query_validation(components):
    """Test empty and oversized queries."""
    with pytest.raises(InvalidInput, match="Query cannot be empty"):
        await components.retriever.retrieve("biz-1", "  ")

    with pytest.raises(InvalidInput, match="Query too long"):
        await components.retriever.retrieve("biz-1", "a" * 1001)


def test_confidence_boosts(components):
    """Test literal query hits raise confidence."""
    retriever = components.retriever
    match = SearchMatch(
        embedding_id="e1",
        business_id="biz-1",
        content_type=ContentType.FAQ,
        content_id="parking",
        content="Question: Is there parking? - Answer: Free parking",
        metadata={"title": "Is there parking?"},
        similarity=0.5,
        updated_at="2024-01-01T00:00:00Z",
    )

    assert retriever.calculate_confidence(match, "parking") == pytest.approx(0.8)
    assert retriever.calculate_confidence(match, "valet") == pytest.approx(0.55)
    assert retriever.calculate_confidence(match.model_copy(update={"similarity": 0.95}), "parking") == 1.0


def test_snippet_centred_on_query(settings, components):
    """Test snippet windows for long content."""
    retriever = ContextRetriever(
        components.index,
        components.embeddings,
        settings=settings.model_copy(update={"max_context_length": 20}),
    )
    content = "a" * 50 + "truffle" + "b" * 50

    snippet = retriever.generate_snippet(content, "truffle")

    assert snippet.startswith("...")
    assert snippet.endswith("...")
    assert "truffle" in snippet
    assert retriever.generate_snippet("short", "truffle") == "short"
