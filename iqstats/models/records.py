# iqstats/models/records.py
# ============================================================================
# Immutable records flowing through the analytics layer
# (raw rows → TestResultRecord → AggregateStats / LeaderboardEntry)
# ============================================================================

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class BadgeTier(str, Enum):
    GENIUS = "genius"
    SUPERIOR = "superior"
    ABOVE = "above"
    GOOD = "good"


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO timestamp (or pass a datetime through). Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


@dataclass(frozen=True)
class TestResultRecord:
    """One row of ``user_test_results``."""
    __test__ = False  # not a pytest class

    id: Optional[str]
    score: Optional[int]
    user_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    age: Optional[int] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    email: Optional[str] = None
    tested_at: Optional[dt.datetime] = None
    name: Optional[str] = None
    guest_name: Optional[str] = None
    guest_location: Optional[str] = None
    gender: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TestResultRecord":
        raw_id = row.get("id")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            score=_to_int(row.get("score")),
            user_id=_to_text(row.get("user_id")),
            duration_seconds=_to_int(row.get("duration_seconds")),
            age=_to_int(row.get("age") if row.get("age") is not None else row.get("guest_age")),
            country=_to_text(row.get("country")),
            country_code=_to_text(row.get("country_code")),
            email=_to_text(row.get("email")),
            tested_at=parse_timestamp(row.get("tested_at")),
            name=_to_text(row.get("name")),
            guest_name=_to_text(row.get("guest_name")),
            guest_location=_to_text(row.get("guest_location")),
            gender=_to_text(row.get("gender")),
        )

    @property
    def is_valid(self) -> bool:
        return self.score is not None and self.score >= 0

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


@dataclass(frozen=True)
class UserProfile:
    id: str
    full_name: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserProfile":
        return cls(
            id=str(row["id"]),
            full_name=_to_text(row.get("full_name")),
            location=_to_text(row.get("location")),
        )


@dataclass(frozen=True)
class Bucket:
    label: str
    count: int
    percentage: float = 0.0


@dataclass(frozen=True)
class CountryRollup:
    key: str
    name: str
    flag: str
    total_score: int
    count: int
    participants: int
    average_score: int


@dataclass(frozen=True)
class AggregateStats:
    """Dashboard snapshot, recomputed wholesale on every refresh."""
    total_records: int
    valid_records: int
    unique_participants: int
    total_countries: int
    average_score: int
    highest_score: int
    genius_badges: int
    superior_badges: int
    above_badges: int
    good_badges: int
    average_duration_seconds: float
    average_test_time: str
    score_distribution: Tuple[Bucket, ...]
    age_distribution: Tuple[Bucket, ...]
    top_countries_by_score: Tuple[CountryRollup, ...]
    top_countries_by_participants: Tuple[CountryRollup, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "validRecords": self.valid_records,
            "totalParticipants": self.unique_participants,
            "totalCountries": self.total_countries,
            "globalAverageIQ": self.average_score,
            "highestScore": self.highest_score,
            "averageTestTime": self.average_test_time,
            "averageDurationSeconds": self.average_duration_seconds,
            "geniusBadges": self.genius_badges,
            "superiorBadges": self.superior_badges,
            "aboveBadges": self.above_badges,
            "goodBadges": self.good_badges,
            "iqDistribution": [{"range": b.label, "count": b.count} for b in self.score_distribution],
            "ageDistribution": [
                {"age": b.label, "count": b.count, "percentage": b.percentage}
                for b in self.age_distribution
            ],
            "topCountriesByIQ": [
                {"country": c.name, "flag": c.flag, "avgIQ": c.average_score}
                for c in self.top_countries_by_score
            ],
            "topCountriesByParticipants": [
                {"country": c.name, "flag": c.flag, "participants": c.participants}
                for c in self.top_countries_by_participants
            ],
        }


@dataclass(frozen=True)
class LeaderboardStats:
    total_participants: int
    highest_score: int
    average_score: int
    genius_percentage: float
    median_score: Optional[int] = None
    top_percentile_score: Optional[int] = None
    recent_growth: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalParticipants": self.total_participants,
            "highestScore": self.highest_score,
            "averageScore": self.average_score,
            "geniusPercentage": self.genius_percentage,
            "medianScore": self.median_score,
            "topPercentileScore": self.top_percentile_score,
            "recentGrowth": self.recent_growth,
        }


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    name: str
    score: int
    location: str
    date: Optional[dt.datetime]
    badge_tier: BadgeTier
    is_anonymous: bool
    user_id: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    duration_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "name": self.name,
            "score": self.score,
            "location": self.location,
            "date": self.date.isoformat() if self.date else None,
            "badge": self.badge_tier.value,
            "isAnonymous": self.is_anonymous,
            "userId": self.user_id,
            "age": self.age,
            "gender": self.gender,
            "duration": self.duration_seconds,
        }


@dataclass(frozen=True)
class LeaderboardSnapshot:
    """Cached leaderboard payload: deduplicated, score-sorted results + stats."""
    results: Tuple[TestResultRecord, ...]
    stats: LeaderboardStats
    profiles: Mapping[str, UserProfile] = field(default_factory=dict)


@dataclass
class LeaderboardPage:
    entries: Optional[List[LeaderboardEntry]]
    stats: Optional[LeaderboardStats]
    total_pages: int
    current_page: int
    error: Optional[BaseException] = None
    served_from_cache: bool = False
    stale: bool = False


@dataclass
class RecentPerformers:
    entries: Optional[List[LeaderboardEntry]]
    error: Optional[BaseException] = None


@dataclass
class UserRanking:
    user_rank: int
    user_entry: LeaderboardEntry
    surrounding: List[LeaderboardEntry]
    total_participants: int


@dataclass
class UserRankingResult:
    ranking: Optional[UserRanking]
    error: Optional[Union[str, BaseException]] = None


@dataclass(frozen=True)
class DashboardSnapshot:
    """Cached dashboard payload: the raw records and the stats computed from them."""
    records: Tuple[TestResultRecord, ...]
    stats: AggregateStats
