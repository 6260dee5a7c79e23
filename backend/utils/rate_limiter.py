"""Per-caller query throttling for the partner dashboard.

Sliding window held in process memory; each API worker enforces its own
budget. Swap for a shared store if the dashboard API is scaled out.
"""
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, NamedTuple
import logging

logger = logging.getLogger(__name__)


class RateLimitDecision(NamedTuple):
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter:
    def __init__(self):
        self._hits: Dict[str, Deque[datetime]] = defaultdict(deque)

    def hit(self, key: str, limit: int, window: timedelta, now: datetime = None) -> RateLimitDecision:
        """Count one request for key; refuse it once limit requests fall inside window."""
        now = now or datetime.now(timezone.utc)
        hits = self._hits[key]
        while hits and now - hits[0] >= window:
            hits.popleft()

        if len(hits) >= limit:
            retry_after = max(1, int((hits[0] + window - now).total_seconds()) + 1)
            logger.warning(f"RATE_LIMITED key={key} limit={limit} retry_after={retry_after}s")
            return RateLimitDecision(False, retry_after)

        hits.append(now)
        return RateLimitDecision(True)

    def reset(self):
        self._hits.clear()

rate_limiter = RateLimiter()
