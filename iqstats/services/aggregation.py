# iqstats/services/aggregation.py
# ============================================================================
# Pure statistics over test results: buckets, badges, countries, participants.
# No I/O, no caching. Every threshold is a named constant below.
# ============================================================================

from __future__ import annotations

import bisect
import datetime as dt
import math
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from iqstats.models.records import (
    AggregateStats,
    BadgeTier,
    Bucket,
    CountryRollup,
    LeaderboardStats,
    TestResultRecord,
)

# (label, inclusive lower bound); last bucket is open-ended
SCORE_BUCKETS: Tuple[Tuple[str, int], ...] = (
    ("<70", 0),
    ("70-84", 70),
    ("85-99", 85),
    ("100-114", 100),
    ("115-129", 115),
    ("130-144", 130),
    ("145+", 145),
)
_SCORE_LOWER_BOUNDS = [lower for _, lower in SCORE_BUCKETS]

# (label, inclusive upper bound); first bucket takes every age <= 20
AGE_BUCKETS: Tuple[Tuple[str, Optional[int]], ...] = (
    ("16-20", 20),
    ("21-25", 25),
    ("26-30", 30),
    ("31-35", 35),
    ("36+", None),
)

BADGE_THRESHOLDS: Tuple[Tuple[int, BadgeTier], ...] = (
    (140, BadgeTier.GENIUS),
    (130, BadgeTier.SUPERIOR),
    (115, BadgeTier.ABOVE),
)

DURATION_MIN_SECONDS = 30
DURATION_MAX_SECONDS = 1800
DURATION_FALLBACK_SECONDS = 300

DEFAULT_AVERAGE_SCORE = 100
DEFAULT_COUNTRY_MIN_SAMPLE = 3
DEFAULT_TOP_COUNTRIES = 5

UNKNOWN_COUNTRY_KEY = "unknown"
UNKNOWN_COUNTRY_NAME = "Unknown"
UNKNOWN_FLAG = "🏳️"

RECENT_WINDOW_DAYS = 30
TOP_PERCENTILE = 0.1


class ParticipantPolicy(str, Enum):
    """How distinct people are counted. The product has used all three."""
    EMAIL_OR_ROW = "email_or_row"  # one per email, else per user_id; each guest row counts alone
    EMAIL_ONLY = "email_only"      # one per email; email-less rows are not counted
    USER_OR_ROW = "user_or_row"    # one per user_id; each guest row counts alone


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_one_decimal(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def classify_badge(score: int) -> BadgeTier:
    for threshold, tier in BADGE_THRESHOLDS:
        if score >= threshold:
            return tier
    return BadgeTier.GOOD


def score_bucket_index(score: int) -> int:
    if score < 0:
        raise ValueError(f"score must be >= 0, got {score}")
    return bisect.bisect_right(_SCORE_LOWER_BOUNDS, score) - 1


def age_bucket_index(age: Optional[int]) -> Optional[int]:
    """Index into AGE_BUCKETS, or None when age is missing (or zero)."""
    if not age or age < 0:
        return None
    for idx, (_, upper) in enumerate(AGE_BUCKETS):
        if upper is None or age <= upper:
            return idx
    return None  # pragma: no cover


def normalize_duration(total_seconds: float, count: int) -> float:
    if count <= 0:
        return float(DURATION_FALLBACK_SECONDS)
    avg = total_seconds / count
    return float(min(max(avg, DURATION_MIN_SECONDS), DURATION_MAX_SECONDS))


def format_duration(seconds: float) -> str:
    """300 → '5:00'."""
    minutes = int(seconds // 60)
    secs = round_half_up(seconds % 60)
    if secs == 60:
        minutes, secs = minutes + 1, 0
    return f"{minutes}:{secs:02d}"


def country_key(record: TestResultRecord) -> str:
    return record.country_code or record.country or UNKNOWN_COUNTRY_KEY


def country_name(record: TestResultRecord) -> str:
    return record.country or record.country_code or UNKNOWN_COUNTRY_NAME


def flag_for(code: str) -> str:
    """Two-letter ISO code → regional-indicator flag emoji."""
    if len(code) != 2 or not code.isascii() or not code.isalpha():
        return UNKNOWN_FLAG
    return "".join(chr(0x1F1E6 + ord(ch) - ord("A")) for ch in code.upper())


def _email_key(record: TestResultRecord) -> Optional[str]:
    return record.email.lower() if record.email else None


def _anonymous_key(record: TestResultRecord, index: int) -> str:
    if record.id:
        return f"anonymous_{record.id}"
    return f"anonymous_{record.score}_{record.age or 'unknown'}_{index}"


def participant_key(record: TestResultRecord, index: int) -> str:
    """Lowercased email, else ``user:<user_id>``, else one key per guest row."""
    email = _email_key(record)
    if email is not None:
        return email
    if record.user_id:
        return f"user:{record.user_id}"
    return _anonymous_key(record, index)


def _sort_key(record: TestResultRecord):
    tested = record.tested_at
    return (-(record.score or 0), tested is None, tested or dt.datetime.min.replace(tzinfo=dt.timezone.utc))


def best_per_participant(records: Iterable[TestResultRecord]) -> List[TestResultRecord]:
    """
    Best-scoring valid record per participant (see ``participant_key``).
    Sorted by score desc, ties by earlier ``tested_at``.
    """
    best: Dict[str, TestResultRecord] = {}
    for index, record in enumerate(records):
        if not record.is_valid:
            continue
        key = participant_key(record, index)
        current = best.get(key)
        if current is None or record.score > current.score:
            best[key] = record
    return sorted(best.values(), key=_sort_key)


def unique_participants(
    records: Sequence[TestResultRecord],
    policy: ParticipantPolicy = ParticipantPolicy.EMAIL_OR_ROW,
) -> int:
    valid = [r for r in records if r.is_valid]
    if policy is ParticipantPolicy.EMAIL_OR_ROW:
        # Same identity rule as the leaderboard, so both totals always agree
        return len(best_per_participant(valid))
    if policy is ParticipantPolicy.EMAIL_ONLY:
        return len({k for k in (_email_key(r) for r in valid) if k is not None})
    if policy is ParticipantPolicy.USER_OR_ROW:
        users = {r.user_id for r in valid if r.user_id}
        guests = sum(1 for r in valid if not r.user_id)
        return len(users) + guests
    raise ValueError(f"Unknown participant policy: {policy}")


class _CountryAccumulator:
    __slots__ = ("key", "name", "total_score", "count", "identities")

    def __init__(self, key: str, name: str):
        self.key = key
        self.name = name
        self.total_score = 0
        self.count = 0
        self.identities: Set[str] = set()

    def rollup(self) -> CountryRollup:
        return CountryRollup(
            key=self.key,
            name=self.name,
            flag=flag_for(self.key),
            total_score=self.total_score,
            count=self.count,
            participants=len(self.identities),
            average_score=round_half_up(self.total_score / self.count) if self.count else 0,
        )


def country_rollups(records: Sequence[TestResultRecord]) -> List[CountryRollup]:
    """Per-country rollups over valid records, in first-seen order."""
    groups: Dict[str, _CountryAccumulator] = {}
    for index, record in enumerate(records):
        if record.is_valid:
            _add_to_country(groups, record, index)
    return [acc.rollup() for acc in groups.values()]


def _add_to_country(groups: Dict[str, _CountryAccumulator], record: TestResultRecord, index: int) -> None:
    key = country_key(record)
    acc = groups.get(key)
    if acc is None:
        acc = groups[key] = _CountryAccumulator(key, country_name(record))
    acc.total_score += record.score
    acc.count += 1
    acc.identities.add(participant_key(record, index))


def top_countries_by_score(
    rollups: Sequence[CountryRollup],
    min_sample: int = DEFAULT_COUNTRY_MIN_SAMPLE,
    limit: int = DEFAULT_TOP_COUNTRIES,
) -> Tuple[CountryRollup, ...]:
    eligible = [c for c in rollups if c.key != UNKNOWN_COUNTRY_KEY and c.count >= min_sample]
    eligible.sort(key=lambda c: c.average_score, reverse=True)
    return tuple(eligible[:limit])


def top_countries_by_participants(
    rollups: Sequence[CountryRollup],
    limit: int = DEFAULT_TOP_COUNTRIES,
) -> Tuple[CountryRollup, ...]:
    eligible = [c for c in rollups if c.key != UNKNOWN_COUNTRY_KEY and c.participants > 0]
    eligible.sort(key=lambda c: c.participants, reverse=True)
    return tuple(eligible[:limit])


def _percent(count: int, total: int) -> float:
    return round_one_decimal(count / total * 100) if total else 0.0


def aggregate(
    records: Sequence[TestResultRecord],
    *,
    min_country_sample: int = DEFAULT_COUNTRY_MIN_SAMPLE,
    top_countries: int = DEFAULT_TOP_COUNTRIES,
    policy: ParticipantPolicy = ParticipantPolicy.EMAIL_OR_ROW,
) -> AggregateStats:
    """Build the dashboard snapshot in one pass over ``records``."""
    score_counts = [0] * len(SCORE_BUCKETS)
    age_counts = [0] * len(AGE_BUCKETS)
    badges = {tier: 0 for tier in BadgeTier}
    countries: Dict[str, _CountryAccumulator] = {}
    valid = 0
    total_score = 0
    highest = 0
    total_duration = 0
    duration_count = 0

    for index, record in enumerate(records):
        if not record.is_valid:
            continue
        score = record.score
        valid += 1
        total_score += score
        highest = max(highest, score)
        badges[classify_badge(score)] += 1
        score_counts[score_bucket_index(score)] += 1

        age_idx = age_bucket_index(record.age)
        if age_idx is not None:
            age_counts[age_idx] += 1

        if record.duration_seconds is not None and record.duration_seconds >= 0:
            total_duration += record.duration_seconds
            duration_count += 1

        _add_to_country(countries, record, index)

    if not valid:
        return empty_stats(total_records=len(records))

    rollups = [acc.rollup() for acc in countries.values()]
    avg_duration = normalize_duration(total_duration, duration_count)

    return AggregateStats(
        total_records=len(records),
        valid_records=valid,
        unique_participants=unique_participants(records, policy),
        total_countries=sum(1 for key in countries if key != UNKNOWN_COUNTRY_KEY),
        average_score=round_half_up(total_score / valid),
        highest_score=highest,
        genius_badges=badges[BadgeTier.GENIUS],
        superior_badges=badges[BadgeTier.SUPERIOR],
        above_badges=badges[BadgeTier.ABOVE],
        good_badges=badges[BadgeTier.GOOD],
        average_duration_seconds=avg_duration,
        average_test_time=format_duration(avg_duration),
        score_distribution=tuple(
            Bucket(label, count, _percent(count, valid))
            for (label, _), count in zip(SCORE_BUCKETS, score_counts)
        ),
        age_distribution=tuple(
            Bucket(label, count, _percent(count, valid))
            for (label, _), count in zip(AGE_BUCKETS, age_counts)
        ),
        top_countries_by_score=top_countries_by_score(rollups, min_country_sample, top_countries),
        top_countries_by_participants=top_countries_by_participants(rollups, top_countries),
    )


def empty_stats(total_records: int = 0) -> AggregateStats:
    """Snapshot shown when there is no valid data (or no data could be fetched)."""
    return AggregateStats(
        total_records=total_records,
        valid_records=0,
        unique_participants=0,
        total_countries=0,
        average_score=DEFAULT_AVERAGE_SCORE,
        highest_score=0,
        genius_badges=0,
        superior_badges=0,
        above_badges=0,
        good_badges=0,
        average_duration_seconds=float(DURATION_FALLBACK_SECONDS),
        average_test_time=format_duration(DURATION_FALLBACK_SECONDS),
        score_distribution=tuple(Bucket(label, 0) for label, _ in SCORE_BUCKETS),
        age_distribution=tuple(Bucket(label, 0) for label, _ in AGE_BUCKETS),
        top_countries_by_score=(),
        top_countries_by_participants=(),
    )


def leaderboard_stats(results: Sequence[TestResultRecord], now: dt.datetime) -> LeaderboardStats:
    """Headline numbers over the deduplicated leaderboard results."""
    scores = sorted((r.score for r in results if r.is_valid), reverse=True)
    if not scores:
        return LeaderboardStats(total_participants=0, highest_score=0, average_score=0, genius_percentage=0.0)

    n = len(scores)
    mid = n // 2
    median = (scores[mid - 1] + scores[mid]) / 2 if n % 2 == 0 else scores[mid]
    genius = sum(1 for s in scores if s >= BADGE_THRESHOLDS[0][0])

    since = now - dt.timedelta(days=RECENT_WINDOW_DAYS)
    recent = sum(1 for r in results if r.tested_at is not None and r.tested_at >= since)

    return LeaderboardStats(
        total_participants=n,
        highest_score=scores[0],
        average_score=round_half_up(sum(scores) / n),
        genius_percentage=round_one_decimal(genius / n * 100),
        median_score=round_half_up(median),
        top_percentile_score=scores[int(n * TOP_PERCENTILE)],
        recent_growth=round_one_decimal(recent / len(results) * 100),
    )
