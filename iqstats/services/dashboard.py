# iqstats/services/dashboard.py

from __future__ import annotations

import logging

from iqstats.datasource.base import DataSource
from iqstats.models.records import AggregateStats, DashboardSnapshot
from iqstats.services.aggregation import (
    DEFAULT_COUNTRY_MIN_SAMPLE,
    DEFAULT_TOP_COUNTRIES,
    ParticipantPolicy,
    aggregate,
    empty_stats,
)
from iqstats.services.cache import CacheManager, CacheRead
from iqstats.services.fetch import DEFAULT_BATCH_SIZE, fetch_results

log = logging.getLogger(__name__)

DASHBOARD_KEY = "dashboard"
DEFAULT_TTL = 10.0  # near real-time widgets


class DashboardService:
    """Dashboard statistics, computed once per refresh and served from cache."""

    def __init__(
        self,
        cache: CacheManager,
        *,
        ttl: float = DEFAULT_TTL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        min_country_sample: int = DEFAULT_COUNTRY_MIN_SAMPLE,
        top_countries: int = DEFAULT_TOP_COUNTRIES,
        policy: ParticipantPolicy = ParticipantPolicy.EMAIL_OR_ROW,
    ):
        self.cache = cache
        self.min_country_sample = min_country_sample
        self.top_countries = top_countries
        self.policy = policy

        async def loader(datasource: DataSource) -> DashboardSnapshot:
            records = await fetch_results(datasource, batch_size=batch_size)
            stats = aggregate(
                records,
                min_country_sample=self.min_country_sample,
                top_countries=self.top_countries,
                policy=self.policy,
            )
            log.info(
                f"✅ Dashboard stats calculated for {len(records)} records "
                f"({stats.unique_participants} participants, {stats.total_countries} countries)"
            )
            return DashboardSnapshot(records=tuple(records), stats=stats)

        cache.register(DASHBOARD_KEY, loader, ttl)
        self.invalidator = cache.invalidator(DASHBOARD_KEY)

    async def read_dashboard(self) -> CacheRead:
        return await self.cache.read(DASHBOARD_KEY)

    async def get_dashboard_stats(self) -> AggregateStats:
        """Current stats; the empty snapshot when nothing could ever be fetched."""
        read = await self.read_dashboard()
        if read.error is not None:
            log.error(f"❌ Dashboard stats unavailable, returning defaults: {read.error}")
            return empty_stats()
        return read.payload.stats

    def clear_dashboard_cache(self) -> None:
        self.invalidator.clear()
