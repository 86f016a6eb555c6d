"""Request and error counters with day/month rollover."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from schemas.tryon import UsageStats
from services.storage import TryOnRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class UsageTracker:
    """
    Single-writer usage counters.

    Every read-modify-write runs under one ``asyncio.Lock`` so concurrent
    pipeline runs cannot lose increments.
    """

    def __init__(self, repository: TryOnRepository, clock: Optional[Clock] = None):
        self._repository = repository
        self._clock = clock or _utc_clock
        self._lock = asyncio.Lock()

    @staticmethod
    def _rolled_over(stats: UsageStats, now: datetime) -> UsageStats:
        last = stats.last_request_at
        if last is None:
            return stats
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        last = last.astimezone(now.tzinfo or timezone.utc)

        updated = stats.model_copy()
        if (last.year, last.month) != (now.year, now.month):
            updated.requests_this_month = 0
            updated.requests_today = 0
        elif last.date() != now.date():
            updated.requests_today = 0
        return updated

    async def record_request(self) -> UsageStats:
        async with self._lock:
            now = self._clock()
            stats = self._rolled_over(await self._repository.get_usage(), now)
            stats.requests_today += 1
            stats.requests_this_month += 1
            stats.total_requests += 1
            stats.last_request_at = now
            await self._repository.save_usage(stats)
            return stats

    async def record_error(self) -> UsageStats:
        async with self._lock:
            stats = await self._repository.get_usage()
            stats.error_count += 1
            await self._repository.save_usage(stats)
            logger.debug("Recorded pipeline error (total %d)", stats.error_count)
            return stats

    async def get_stats(self) -> UsageStats:
        """Current counters, with stale day/month counters reported as zero."""
        async with self._lock:
            return self._rolled_over(await self._repository.get_usage(), self._clock())
