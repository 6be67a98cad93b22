"""Per-business, per-client request rate limiting"""

import asyncio
import math
from typing import Dict, List, Optional
import structlog

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import RateLimitError
from .models import RateLimitStatus

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Sliding-window limiter.

    Each key may make ``rate_limit_requests`` requests in any
    ``rate_limit_window`` second span. Rejected requests are not counted.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, business_id: str, client_id: str) -> RateLimitStatus:
        """Count a request against the window and report whether it is allowed"""
        key = f"{business_id}:{client_id}"

        async with self._lock:
            current_time = self.clock.now()
            window_start = current_time - self.settings.rate_limit_window

            # Remove old requests outside the window
            timestamps = [t for t in self.requests.get(key, []) if t > window_start]
            self.requests[key] = timestamps

            if len(timestamps) >= self.settings.rate_limit_requests:
                retry_after = max(1, math.ceil(timestamps[0] - window_start))
                return RateLimitStatus(allowed=False, remaining=0, retry_after=retry_after)

            timestamps.append(current_time)
            return RateLimitStatus(
                allowed=True,
                remaining=self.settings.rate_limit_requests - len(timestamps),
            )

    async def enforce(self, business_id: str, client_id: str) -> RateLimitStatus:
        """Like ``check`` but raises RateLimitError when the limit is hit"""
        status = await self.check(business_id, client_id)
        if not status.allowed:
            logger.warning("Rate limit exceeded",
                           business_id=business_id,
                           client_id=client_id,
                           retry_after=status.retry_after)
            raise RateLimitError(status.retry_after)
        return status

    async def cleanup_expired(self) -> int:
        """Forget clients with no request inside the current window"""
        async with self._lock:
            window_start = self.clock.now() - self.settings.rate_limit_window
            stale = [key for key, timestamps in self.requests.items()
                     if not any(t > window_start for t in timestamps)]
            for key in stale:
                del self.requests[key]

        if stale:
            logger.debug("Cleaned up idle rate limit keys", count=len(stale))
        return len(stale)
