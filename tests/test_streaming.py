"""Tests for the streaming event channel and SSE framing."""

import asyncio
import json

import pytest

from concierge.orchestrator.models import QueryResponse, StreamEvent, StreamEventType
from concierge.orchestrator.streaming import ChannelClosed, StreamChannel


@pytest.mark.asyncio
async def test_channel_delivers_in_order_until_closed():
    """Test events drain before the iteration ends."""
    channel = StreamChannel()
    await channel.send(StreamEvent.chunk("Hello "))
    await channel.send(StreamEvent.chunk("there"))
    channel.close()

    received = [event.data["text"] async for event in channel]

    assert received == ["Hello ", "there"]
    assert channel.sent == 2


@pytest.mark.asyncio
async def test_send_after_close_rejected():
    """Test a closed channel refuses events."""
    channel = StreamChannel()
    channel.close()
    channel.close()

    with pytest.raises(ChannelClosed):
        await channel.send(StreamEvent.chunk("late"))
    assert channel.closed is True


@pytest.mark.asyncio
async def test_close_wakes_waiting_consumer():
    """Test a consumer blocked on the next event finishes when the channel closes."""
    channel = StreamChannel()

    async def consume():
        return [event async for event in channel]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    channel.close()

    assert await asyncio.wait_for(consumer, timeout=1) == []
    # A second reader also sees the end
    assert [event async for event in channel] == []


def test_sse_framing():
    """Test server-sent event encoding."""
    chunk = StreamEvent.chunk("We open at 11")
    error = StreamEvent.error({"error": "timeout", "message": "too slow"})

    assert chunk.to_sse() == 'event: chunk\ndata: {"text": "We open at 11"}\n\n'
    assert error.to_sse().startswith("event: error\n")
    assert json.loads(error.to_sse().split("data: ", 1)[1]) == {"error": "timeout", "message": "too slow"}


def test_done_event_carries_full_response():
    """Test the terminal event payload."""
    response = QueryResponse(response="Open daily", confidence=0.7, intent="HOURS_POLICY", session_id="session-0001")

    event = StreamEvent.done(response)

    assert event.type == StreamEventType.DONE
    assert event.data["response"] == "Open daily"
    assert event.data["session_id"] == "session-0001"
    assert event.data["usage"]["total_tokens"] == 0
