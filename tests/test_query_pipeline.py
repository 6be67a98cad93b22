"""End-to-end tests for the query pipeline with fake providers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.analytics.models import QueryStatus
from concierge.errors import (
    NotFoundError,
    PipelineTimeoutError,
    QuotaExceededError,
    RateLimitError,
    UpstreamProviderError,
    ValidationError,
)
from concierge.gateway.business_store import BusinessStore
from concierge.llm.responses import fallback_response
from concierge.orchestrator.factory import build_pipeline
from concierge.orchestrator.models import QueryRequest, StreamEventType
from concierge.rules.models import (
    ActionType,
    ConditionOperator,
    RuleAction,
    RuleCategory,
    RuleCondition,
    RuleDraft,
)
from tests.fakes import FakeStream, instant_sleep

HOURS_QUERY = QueryRequest(query="What are your hours?", session_id="session-0001")


async def add_rule(components, intent: str, action: RuleAction, priority: int = 50):
    return await components.rules_engine.create_rule(RuleDraft(
        business_id="biz-1",
        name=f"{action.type.value} on {intent}",
        category=RuleCategory.RESPONSE_BEHAVIOR,
        rule_type="response_shaping",
        priority=priority,
        conditions=[RuleCondition(field="intent", operator=ConditionOperator.EQUALS, value=intent)],
        actions=[action],
    ))


@pytest.mark.asyncio
async def test_hours_query_answered(components, openai_client):
    """Test the happy path through every stage."""
    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    assert response.intent == "HOURS_POLICY"
    assert response.response == openai_client.completions.default_text
    assert response.session_id == "session-0001"
    assert response.context_sources == ["business_data"]
    assert response.usage.total_tokens == 150
    assert response.degraded_stages == []
    assert response.suggestions[0] == "What are your delivery hours?"
    assert response.confidence == pytest.approx(0.6)
    assert [s.step_name for s in response.steps] == [
        "validating", "rate_limiting", "session_resolving", "intent_classifying",
        "context_retrieving", "rules_evaluating", "generating", "logging",
    ]
    assert all(s.success for s in response.steps)


@pytest.mark.asyncio
async def test_successful_answer_recorded(components):
    """Test conversation turns and analytics after an answer."""
    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    history = await components.sessions.get_history("biz-1", response.session_id)
    assert [(t.role, t.content) for t in history] == [
        ("user", "What are your hours?"),
        ("assistant", response.response),
    ]

    record = components.analytics.recent("biz-1")[-1]
    assert record.status == QueryStatus.SUCCESS
    assert record.intent == "HOURS_POLICY"
    assert record.tokens == 150


@pytest.mark.asyncio
async def test_history_sent_on_follow_up(components, openai_client):
    """Test prior turns reach the generation prompt."""
    await components.pipeline.process_query("biz-1", HOURS_QUERY)
    await components.pipeline.process_query("biz-1", QueryRequest(query="And on Saturday?",
                                                                  session_id="session-0001"))

    messages = openai_client.completions.calls[1]["messages"]
    assert messages[1] == {"role": "user", "content": "What are your hours?"}
    assert messages[-1] == {"role": "user", "content": "And on Saturday?"}


@pytest.mark.asyncio
async def test_long_query_trimmed_for_retrieval(components, openai_client, settings):
    """Test queries past the retrieval limit still get context."""
    query = "What are your hours? " + " ".join(f"word{i}" for i in range(200))
    assert settings.max_retrieval_query_length < len(query) <= settings.max_query_length

    response = await components.pipeline.process_query("biz-1", QueryRequest(query=query))

    assert response.degraded_stages == []
    assert response.context_sources == ["business_data"]
    assert openai_client.embeddings.calls
    assert all(len(text) <= settings.max_retrieval_query_length for text in openai_client.embeddings.calls)


@pytest.mark.asyncio
async def test_quota_error_during_retrieval_still_answers(components, openai_client):
    """Test an embedding quota failure degrades to empty context."""
    openai_client.embeddings.fail_with = QuotaExceededError("OpenAI quota exceeded during embedding")

    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    assert response.context_sources == []
    assert response.intent == "HOURS_POLICY"
    assert response.degraded_stages == ["context_retrieving"]
    assert response.response == openai_client.completions.default_text


@pytest.mark.asyncio
async def test_generation_failure_uses_fallback(components, openai_client, business):
    """Test the templated fallback answer."""
    openai_client.completions.responses = [UpstreamProviderError("provider down", retryable=False)]

    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    assert response.response == fallback_response("HOURS_POLICY", business.name)
    assert response.confidence == pytest.approx(0.3)
    assert response.degraded_stages == ["generating"]
    assert await components.sessions.get_history("biz-1", response.session_id) == []


@pytest.mark.asyncio
async def test_empty_generation_uses_fallback(components, openai_client, business):
    """Test a blank provider answer."""
    openai_client.completions.responses = ["   "]

    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    assert response.response == fallback_response("HOURS_POLICY", business.name)


@pytest.mark.asyncio
async def test_rule_failure_degrades_to_no_actions(components):
    """Test rule evaluation errors do not fail the query."""
    components.rules_engine.evaluate = AsyncMock(side_effect=RuntimeError("rule store offline"))

    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    assert response.applied_actions == []
    assert response.degraded_stages == ["rules_evaluating"]


@pytest.mark.asyncio
async def test_invalid_query_rejected_and_logged(components):
    """Test validation failures abort the query."""
    with pytest.raises(ValidationError):
        await components.pipeline.process_query("biz-1", QueryRequest(query="   "))

    record = components.analytics.recent("biz-1")[-1]
    assert record.status == QueryStatus.VALIDATION_ERROR
    assert record.error_message == "Query cannot be empty"


@pytest.mark.asyncio
async def test_rate_limited_query_rejected(settings, openai_client, business, clock):
    """Test the rate limiting stage."""
    components = build_pipeline(
        settings.model_copy(update={"rate_limit_requests": 1}),
        openai_client=openai_client,
        businesses=BusinessStore([business]),
        clock=clock,
        sleep=instant_sleep,
    )
    request = QueryRequest(query="What are your hours?", customer_id="cust42")

    await components.pipeline.process_query("biz-1", request)
    with pytest.raises(RateLimitError) as exc_info:
        await components.pipeline.process_query("biz-1", request)

    assert exc_info.value.retry_after == settings.rate_limit_window
    assert components.analytics.recent("biz-1")[-1].status == QueryStatus.RATE_LIMITED


@pytest.mark.asyncio
async def test_unknown_business_not_found(components):
    """Test a missing business surfaces as not found."""
    with pytest.raises(NotFoundError):
        await components.pipeline.process_query("biz-404", HOURS_QUERY)


@pytest.mark.asyncio
async def test_block_rule_replaces_answer(components, openai_client):
    """Test block_response skips generation."""
    await add_rule(components, "COMPLAINT_FEEDBACK", RuleAction(
        type=ActionType.BLOCK_RESPONSE, parameters={"message": "Please call us so a manager can help."}))

    response = await components.pipeline.process_query(
        "biz-1", QueryRequest(query="My order was wrong and I want a refund", session_id="session-0002"))

    assert response.blocked is True
    assert response.response == "Please call us so a manager can help."
    assert openai_client.completions.calls == []
    assert await components.sessions.get_history("biz-1", "session-0002") == []


@pytest.mark.asyncio
async def test_rule_directives_shape_answer(components, openai_client):
    """Test tone, disclaimer and escalation directives."""
    await add_rule(components, "HOURS_POLICY", RuleAction(
        type=ActionType.SET_RESPONSE_STYLE, parameters={"tone": "casual"}), priority=90)
    await add_rule(components, "HOURS_POLICY", RuleAction(
        type=ActionType.ADD_DISCLAIMER, parameters={"text": "Holiday hours may differ."}), priority=40)
    await add_rule(components, "HOURS_POLICY", RuleAction(
        type=ActionType.ESCALATE, parameters={"reason": "hours change"}), priority=30)

    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)

    system_prompt = openai_client.completions.calls[0]["messages"][0]["content"]
    assert "Tone: casual" in system_prompt
    assert response.response.endswith("Holiday hours may differ.")
    assert response.escalated is True
    assert {a.type for a in response.applied_actions} == {
        ActionType.SET_RESPONSE_STYLE, ActionType.ADD_DISCLAIMER, ActionType.ESCALATE,
    }


@pytest.mark.asyncio
async def test_timeout_aborts_query(settings, openai_client, business, clock):
    """Test the global processing timeout."""
    openai_client.embeddings.delay = 0.2
    components = build_pipeline(
        settings.model_copy(update={"processing_timeout_seconds": 0.05}),
        openai_client=openai_client,
        businesses=BusinessStore([business]),
        clock=clock,
        sleep=instant_sleep,
    )

    with pytest.raises(PipelineTimeoutError):
        await components.pipeline.process_query("biz-1", HOURS_QUERY)

    assert components.analytics.recent("biz-1")[-1].status == QueryStatus.TIMEOUT
    # Let the abandoned embedding request finish
    await asyncio.sleep(0.25)


@pytest.mark.asyncio
async def test_analytics_failure_does_not_change_response(settings, openai_client, business, clock):
    """Test fire-and-forget analytics."""
    redis_client = MagicMock()
    redis_client.publish = AsyncMock(side_effect=ConnectionError("redis down"))
    components = build_pipeline(
        settings.model_copy(update={"analytics_enabled": True}),
        openai_client=openai_client,
        redis_client=redis_client,
        businesses=BusinessStore([business]),
        clock=clock,
        sleep=instant_sleep,
    )

    response = await components.pipeline.process_query("biz-1", HOURS_QUERY)
    await components.analytics.flush()

    assert response.intent == "HOURS_POLICY"
    assert response.degraded_stages == []
    assert components.analytics.publish_failures == 1
    redis_client.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_streaming_chunks_then_done(components, openai_client):
    """Test streamed answers end with the full response."""
    events = [event async for event in components.pipeline.process_streaming_query("biz-1", HOURS_QUERY)]

    chunks = [e.data["text"] for e in events if e.type == StreamEventType.CHUNK]
    done = events[-1]
    assert done.type == StreamEventType.DONE
    assert "".join(chunks) == done.data["response"]
    assert done.data["response"] == openai_client.completions.default_text
    assert done.data["usage"]["total_tokens"] == 50
    assert done.to_sse().startswith("event: done\ndata: {")


@pytest.mark.asyncio
async def test_streaming_cancel_releases_provider_stream(components, openai_client):
    """Test closing the event stream stops forwarding and closes the provider stream."""
    provider_stream = FakeStream([f"word{i} " for i in range(20)], delay=0.01)
    openai_client.completions.responses = [provider_stream]

    events = components.pipeline.process_streaming_query("biz-1", HOURS_QUERY)
    first = await events.__anext__()
    await events.aclose()

    assert first.type == StreamEventType.CHUNK
    assert provider_stream.closed is True
    forwarded = provider_stream.yielded
    await asyncio.sleep(0.05)
    assert provider_stream.yielded == forwarded < 20


@pytest.mark.asyncio
async def test_streaming_failure_after_chunks_sends_error_event(components, openai_client):
    """Test a terminal error event once chunks were forwarded."""
    openai_client.completions.responses = [FakeStream(["We open ", "at "], error=ConnectionResetError("reset"))]

    events = [event async for event in components.pipeline.process_streaming_query("biz-1", HOURS_QUERY)]

    assert [e.type for e in events] == [StreamEventType.CHUNK, StreamEventType.CHUNK, StreamEventType.ERROR]
    assert events[-1].data["error"] == "upstream_provider_error"
    assert components.analytics.recent("biz-1")[-1].status == QueryStatus.ERROR


@pytest.mark.asyncio
async def test_streaming_failure_before_chunks_streams_fallback(components, openai_client, business):
    """Test the fallback answer is streamed when generation cannot start."""
    openai_client.completions.responses = [UpstreamProviderError("provider down", retryable=False)]

    events = [event async for event in components.pipeline.process_streaming_query("biz-1", HOURS_QUERY)]

    assert [e.type for e in events] == [StreamEventType.CHUNK, StreamEventType.DONE]
    assert events[0].data["text"] == fallback_response("HOURS_POLICY", business.name)
    assert events[1].data["degraded_stages"] == ["generating"]


@pytest.mark.asyncio
async def test_streaming_validation_error_event(components):
    """Test rejected streaming queries end with an error event."""
    events = [event async for event in components.pipeline.process_streaming_query(
        "biz-1", QueryRequest(query=""))]

    assert len(events) == 1
    assert events[0].type == StreamEventType.ERROR
    assert events[0].data["error"] == "validation_error"


@pytest.mark.asyncio
async def test_health_check_reports_components(components):
    """Test pipeline health."""
    checks = await components.pipeline.health_check()

    assert checks["embeddings"]["status"] == "healthy"
    assert checks["generation"]["status"] == "healthy"
    assert checks["index"]["status"] == "healthy"
    assert checks["analytics"]["status"] == "disabled"
