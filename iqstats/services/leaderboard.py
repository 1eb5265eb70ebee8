# iqstats/services/leaderboard.py

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import math
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

from iqstats.datasource.base import DataSource, Filter
from iqstats.models.records import (
    LeaderboardEntry,
    LeaderboardPage,
    LeaderboardSnapshot,
    LeaderboardStats,
    RecentPerformers,
    TestResultRecord,
    UserProfile,
    UserRanking,
    UserRankingResult,
)
from iqstats.services.aggregation import best_per_participant, classify_badge, leaderboard_stats
from iqstats.services.cache import CacheManager, CacheRead
from iqstats.services.fetch import DEFAULT_BATCH_SIZE, fetch_profiles, fetch_results

log = logging.getLogger(__name__)

LEADERBOARD_KEY = "leaderboard"
DEFAULT_TTL = 300.0  # 5 minutes
SURROUNDING = 5      # neighbours shown above/below a user's own rank


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class LeaderboardPaginator:
    """Turns score-sorted results into ranked entries; rank = global index + 1."""

    ANONYMOUS_NAME = "Anonymous User"
    UNKNOWN_LOCATION = "Unknown"

    @staticmethod
    def total_pages(total: int, page_size: int) -> int:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        return math.ceil(total / page_size)

    def resolve_identity(
        self, record: TestResultRecord, profiles: Mapping[str, UserProfile]
    ) -> Tuple[str, str]:
        if record.is_anonymous:
            name = record.guest_name or record.name or self.ANONYMOUS_NAME
            location = record.guest_location or record.country or self.UNKNOWN_LOCATION
            return name, location

        profile = profiles.get(record.user_id)
        name = (profile.full_name if profile else None) or record.name or f"User_{record.user_id[-8:]}"
        location = (profile.location if profile else None) or record.country or self.UNKNOWN_LOCATION
        return name, location

    def to_entry(
        self, record: TestResultRecord, rank: int, profiles: Mapping[str, UserProfile]
    ) -> LeaderboardEntry:
        name, location = self.resolve_identity(record, profiles)
        return LeaderboardEntry(
            rank=rank,
            name=name,
            score=record.score,
            location=location,
            date=record.tested_at,
            badge_tier=classify_badge(record.score),
            is_anonymous=record.is_anonymous,
            user_id=record.user_id,
            age=record.age,
            gender=record.gender,
            duration_seconds=record.duration_seconds,
        )

    def page(
        self,
        results: Sequence[TestResultRecord],
        page_number: int,
        page_size: int,
        profiles: Optional[Mapping[str, UserProfile]] = None,
    ) -> List[LeaderboardEntry]:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        page_number = max(page_number, 1)
        start = (page_number - 1) * page_size
        return self.window(results, start, start + page_size, profiles)

    def window(
        self,
        results: Sequence[TestResultRecord],
        start: int,
        stop: int,
        profiles: Optional[Mapping[str, UserProfile]] = None,
    ) -> List[LeaderboardEntry]:
        profiles = profiles or {}
        return [
            self.to_entry(record, rank, profiles)
            for rank, record in enumerate(results[start:stop], start=start + 1)
        ]


async def load_leaderboard(
    datasource: DataSource,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    now: Callable[[], dt.datetime] = utcnow,
) -> LeaderboardSnapshot:
    """Registered and guest results are fetched concurrently; profiles afterwards."""
    registered, anonymous = await asyncio.gather(
        fetch_results(datasource, [Filter.not_null("user_id")], batch_size),
        fetch_results(datasource, [Filter.is_null("user_id")], batch_size),
    )
    results = best_per_participant(registered + anonymous)
    profiles = await fetch_profiles(datasource, (r.user_id for r in results if r.user_id))
    log.info(
        f"Leaderboard built: {len(results)} participants "
        f"({len(registered)} registered rows, {len(anonymous)} guest rows)"
    )
    return LeaderboardSnapshot(results=tuple(results), stats=leaderboard_stats(results, now()), profiles=profiles)


class LeaderboardService:
    """Ranked views over the cached leaderboard snapshot."""

    def __init__(
        self,
        cache: CacheManager,
        *,
        ttl: float = DEFAULT_TTL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        now: Callable[[], dt.datetime] = utcnow,
        paginator: Optional[LeaderboardPaginator] = None,
    ):
        self.cache = cache
        self.now = now
        self.paginator = paginator or LeaderboardPaginator()

        async def loader(datasource: DataSource) -> LeaderboardSnapshot:
            return await load_leaderboard(datasource, batch_size=batch_size, now=now)

        cache.register(LEADERBOARD_KEY, loader, ttl)
        self.invalidator = cache.invalidator(LEADERBOARD_KEY)

    async def _snapshot(self) -> CacheRead:
        return await self.cache.read(LEADERBOARD_KEY)

    async def get_leaderboard(self, page: int = 1, items_per_page: int = 20) -> LeaderboardPage:
        if items_per_page < 1:
            raise ValueError("items_per_page must be >= 1")
        page = max(page, 1)
        read = await self._snapshot()
        if read.error is not None:
            log.error(f"❌ Leaderboard unavailable: {read.error}")
            return LeaderboardPage(entries=None, stats=None, total_pages=0, current_page=page, error=read.error)

        snapshot: LeaderboardSnapshot = read.payload
        entries = self.paginator.page(snapshot.results, page, items_per_page, snapshot.profiles)
        total_pages = self.paginator.total_pages(len(snapshot.results), items_per_page)
        log.debug(f"Page {page}/{total_pages}: {len(entries)} items")
        return LeaderboardPage(
            entries=entries,
            stats=snapshot.stats,
            total_pages=total_pages,
            current_page=page,
            served_from_cache=read.served_from_cache,
            stale=read.stale,
        )

    async def get_recent_top_performers(self, days: int = 7, limit: int = 5) -> RecentPerformers:
        read = await self._snapshot()
        if read.error is not None:
            return RecentPerformers(entries=None, error=read.error)

        snapshot: LeaderboardSnapshot = read.payload
        since = self.now() - dt.timedelta(days=days)
        recent = [r for r in snapshot.results if r.tested_at is not None and r.tested_at >= since]
        return RecentPerformers(entries=self.paginator.window(recent, 0, limit, snapshot.profiles))

    async def get_user_ranking(self, user_id: str) -> UserRankingResult:
        read = await self._snapshot()
        if read.error is not None:
            return UserRankingResult(ranking=None, error=read.error)

        snapshot: LeaderboardSnapshot = read.payload
        results = snapshot.results
        if not results:
            return UserRankingResult(ranking=None, error="No leaderboard data available")

        index = next((i for i, r in enumerate(results) if r.user_id == user_id), None)
        if index is None:
            return UserRankingResult(ranking=None, error="User not found in leaderboard")

        start = max(0, index - SURROUNDING)
        stop = min(len(results), index + SURROUNDING + 1)
        return UserRankingResult(
            ranking=UserRanking(
                user_rank=index + 1,
                user_entry=self.paginator.to_entry(results[index], index + 1, snapshot.profiles),
                surrounding=self.paginator.window(results, start, stop, snapshot.profiles),
                total_participants=len(results),
            )
        )

    async def get_quick_stats(self) -> LeaderboardStats:
        read = await self._snapshot()
        if read.error is not None:
            return LeaderboardStats(total_participants=0, highest_score=0, average_score=0, genius_percentage=0.0)
        return read.payload.stats

    def clear_leaderboard_cache(self) -> None:
        self.invalidator.clear()
