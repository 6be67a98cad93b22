"""Single-producer, single-consumer channel for streamed pipeline events"""

import asyncio
from typing import Optional

from .models import StreamEvent

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised when sending on a closed channel"""


class StreamChannel:
    """Queue of StreamEvents that ends once closed and drained.

    The pipeline sends events from its producer task; the transport layer
    iterates with ``async for``. Closing is idempotent and wakes a consumer
    that is waiting for the next event.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent):
        if self._closed:
            raise ChannelClosed("Stream channel is closed")
        self.sent += 1
        await self._queue.put(event)

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        item: Optional[object] = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item
