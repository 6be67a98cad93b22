"""Fire-and-forget analytics for processed queries"""

import asyncio
from collections import Counter, deque
from typing import Any, Dict, List, Optional, Set
import structlog
import redis.asyncio as redis

from ..config import Settings, settings as default_settings
from ..metrics import record_analytics_event
from .models import QueryLogRecord

logger = structlog.get_logger(__name__)


class AnalyticsLogger:
    """Publish query records to a redis channel and keep a local ring buffer.

    ``log_query`` never raises and never waits on redis: publishing runs in
    a background task whose failures are counted and logged only.
    """

    def __init__(self, settings: Optional[Settings] = None, redis_client: Optional[redis.Redis] = None):
        self.settings = settings or default_settings
        self.redis_client = redis_client
        self.event_buffer: deque = deque(maxlen=self.settings.analytics_buffer_size)
        self._pending: Set[asyncio.Task] = set()
        self.events_logged = 0
        self.publish_failures = 0

    async def initialize(self):
        if self.redis_client is None and self.settings.analytics_enabled:
            self.redis_client = redis.from_url(self.settings.redis_url)
            logger.info("Analytics logger initialized", channel=self.settings.analytics_channel)

    def log_query(self, record: QueryLogRecord) -> Optional[asyncio.Task]:
        """Buffer the record and schedule its publication"""
        self.event_buffer.append(record)
        self.events_logged += 1

        if not self.settings.analytics_enabled or self.redis_client is None:
            record_analytics_event("buffered")
            return None

        task = asyncio.create_task(self._publish(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _publish(self, record: QueryLogRecord):
        try:
            await self.redis_client.publish(self.settings.analytics_channel, record.model_dump_json())
            record_analytics_event("published")
        except Exception as e:
            self.publish_failures += 1
            record_analytics_event("failed")
            logger.error("Analytics publish failed",
                         event_id=record.event_id,
                         business_id=record.business_id,
                         status=record.status.value,
                         error=str(e))

    async def flush(self):
        """Wait for every scheduled publication"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def recent(self, business_id: Optional[str] = None, limit: int = 100) -> List[QueryLogRecord]:
        records = [r for r in self.event_buffer if business_id is None or r.business_id == business_id]
        return records[-limit:]

    def summary(self, business_id: Optional[str] = None) -> Dict[str, Any]:
        records = self.recent(business_id, limit=len(self.event_buffer))
        if not records:
            return {"total_queries": 0, "by_status": {}, "by_intent": {}, "average_processing_time_ms": 0.0}

        return {
            "total_queries": len(records),
            "by_status": dict(Counter(r.status.value for r in records)),
            "by_intent": dict(Counter(r.intent for r in records if r.intent)),
            "average_processing_time_ms": sum(r.processing_time_ms for r in records) / len(records),
            "total_tokens": sum(r.tokens for r in records),
            "total_cost": sum(r.cost for r in records),
        }

    async def close(self):
        await self.flush()
        if self.redis_client is not None:
            await self.redis_client.aclose()

    async def health_check(self) -> Dict[str, Any]:
        status = "disabled"
        if self.redis_client is not None:
            try:
                await self.redis_client.ping()
                status = "healthy"
            except Exception as e:
                logger.warning("Analytics redis unreachable", error=str(e))
                status = "degraded"
        return {
            "status": status,
            "buffered": len(self.event_buffer),
            "publish_failures": self.publish_failures,
        }
