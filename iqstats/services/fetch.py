# iqstats/services/fetch.py
# Bulk reads through the DataSource: count first, then ranged pages in order.

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence

from iqstats.datasource.base import DataSource, Filter, Order
from iqstats.models.records import TestResultRecord, UserProfile

log = logging.getLogger(__name__)

RESULTS_TABLE = "user_test_results"
PROFILES_TABLE = "user_profiles"

DEFAULT_BATCH_SIZE = 1000
PROFILE_CHUNK = 200  # ids per ``in`` filter, keeps PostgREST URLs short


async def fetch_all(
    datasource: DataSource,
    table: str,
    filters: Sequence[Filter] = (),
    order: Sequence[Order] = (),
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[Dict[str, Any]]:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    total = await datasource.count(table, filters)
    rows: List[Dict[str, Any]] = []
    while len(rows) < total:
        batch = await datasource.query(table, filters, order, len(rows), batch_size)
        if not batch:
            # rows deleted between count and query
            break
        rows.extend(batch)
    log.debug(f"Fetched {len(rows)}/{total} rows from {table}")
    return rows


async def fetch_results(
    datasource: DataSource,
    filters: Sequence[Filter] = (),
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[TestResultRecord]:
    """
    All matching results, score desc then id.

    Offset paging is not a snapshot: a row inserted between two page reads
    shifts the window, so the same row can come back twice. Repeats are dropped
    by ``id``; a row skipped that way shows up on the next refresh.
    """
    rows = await fetch_all(
        datasource,
        RESULTS_TABLE,
        filters,
        order=(Order("score", descending=True), Order("id")),
        batch_size=batch_size,
    )
    records: List[TestResultRecord] = []
    seen = set()
    for row in rows:
        record = TestResultRecord.from_row(row)
        if record.id is not None:
            if record.id in seen:
                continue
            seen.add(record.id)
        records.append(record)
    if len(records) != len(rows):
        log.warning(f"Dropped {len(rows) - len(records)} repeated rows from {RESULTS_TABLE}")
    return records


async def fetch_profiles(
    datasource: DataSource,
    user_ids: Iterable[str],
) -> Dict[str, UserProfile]:
    ids = sorted(set(user_ids))
    profiles: Dict[str, UserProfile] = {}
    for start in range(0, len(ids), PROFILE_CHUNK):
        chunk = ids[start:start + PROFILE_CHUNK]
        rows = await datasource.query(PROFILES_TABLE, [Filter.in_("id", chunk)], limit=len(chunk))
        for row in rows:
            profile = UserProfile.from_row(row)
            profiles[profile.id] = profile
    return profiles
