# iqstats/services/analytics.py
# Wires one CacheManager to the leaderboard and dashboard services.

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from iqstats.config import Settings
from iqstats.datasource.base import DataSource
from iqstats.services.aggregation import ParticipantPolicy
from iqstats.services.cache import CacheManager
from iqstats.services.dashboard import DashboardService
from iqstats.services.leaderboard import LeaderboardService
from iqstats.services.retry import RetryExecutor

log = logging.getLogger(__name__)


class Analytics:
    def __init__(self, cache: CacheManager, leaderboard: LeaderboardService, dashboard: DashboardService):
        self.cache = cache
        self.leaderboard = leaderboard
        self.dashboard = dashboard

    @classmethod
    def from_settings(
        cls,
        datasource: DataSource,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        retry: Optional[RetryExecutor] = None,
    ) -> "Analytics":
        cache = CacheManager(
            datasource,
            retry=retry or RetryExecutor(settings.FETCH_MAX_RETRIES, settings.FETCH_BASE_DELAY),
            clock=clock,
        )
        leaderboard = LeaderboardService(
            cache,
            ttl=settings.LEADERBOARD_CACHE_TTL,
            batch_size=settings.FETCH_BATCH_SIZE,
        )
        dashboard = DashboardService(
            cache,
            ttl=settings.DASHBOARD_CACHE_TTL,
            batch_size=settings.FETCH_BATCH_SIZE,
            min_country_sample=settings.COUNTRY_MIN_SAMPLE,
            top_countries=settings.TOP_COUNTRIES_LIMIT,
            policy=ParticipantPolicy(settings.PARTICIPANT_POLICY),
        )
        return cls(cache, leaderboard, dashboard)

    async def warm_up(self) -> bool:
        """Preload both datasets concurrently. True when both are available."""
        log.info("🔥 Warming up cache...")
        lb, dash = await asyncio.gather(
            self.leaderboard.get_leaderboard(1, 10),
            self.dashboard.read_dashboard(),
        )
        ok = lb.error is None and dash.error is None
        if ok:
            log.info("✅ Cache warmed up successfully")
        else:
            log.error(f"❌ Failed to warm up cache: {lb.error or dash.error}")
        return ok

    def clear_all(self) -> None:
        self.cache.clear_all()

    def status(self) -> Dict[str, Dict[str, Any]]:
        return self.cache.status()
