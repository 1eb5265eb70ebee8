"""Shared fixtures: an in-memory DataSource, a manual clock and row builders."""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock

from iqstats.services.retry import RetryExecutor


class FakeDataSource:
    """In-memory DataSource. ``gate`` blocks every call until set; ``error`` is raised on every call."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables = {name: list(rows) for name, rows in (tables or {}).items()}
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[BaseException] = None
        self.calls: List[tuple] = []

    def count_calls(self, table: str = "user_test_results") -> int:
        return sum(1 for kind, name, _ in self.calls if kind == "count" and name == table)

    async def _enter(self, kind, table, filters):
        self.calls.append((kind, table, tuple(filters)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    @staticmethod
    def _matches(row, f) -> bool:
        value = row.get(f.column)
        if f.op == "is_null":
            return value is None
        if f.op == "not_null":
            return value is not None
        if f.op == "in":
            return value in f.value
        if f.op == "eq":
            return value == f.value
        if f.op == "neq":
            return value != f.value
        if value is None:
            return False
        return {
            "gt": value > f.value,
            "gte": value >= f.value,
            "lt": value < f.value,
            "lte": value <= f.value,
        }[f.op]

    def _select(self, table, filters):
        return [r for r in self.tables.get(table, []) if all(self._matches(r, f) for f in filters)]

    async def query(self, table, filters=(), order=(), offset=0, limit=None):
        await self._enter("query", table, filters)
        rows = self._select(table, filters)
        for o in reversed(list(order)):
            rows.sort(key=lambda r: (r.get(o.column) is None, r.get(o.column)), reverse=o.descending)
        stop = None if limit is None else offset + limit
        return [dict(r) for r in rows[offset:stop]]

    async def count(self, table, filters=()):
        await self._enter("count", table, filters)
        return len(self._select(table, filters))


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def result_row():
    """Build a ``user_test_results`` row; ids are sequential unless given."""
    ids = itertools.count(1)

    def make(score, **fields) -> Dict[str, Any]:
        row = {
            "id": f"r{next(ids):04d}",
            "score": score,
            "user_id": None,
            "duration_seconds": None,
            "age": None,
            "country": None,
            "country_code": None,
            "email": None,
            "tested_at": "2026-01-01T12:00:00Z",
            "name": None,
            "guest_name": None,
            "guest_location": None,
            "gender": None,
        }
        row.update(fields)
        return row

    return make


@pytest.fixture
def fake_datasource():
    def make(results=(), profiles=()) -> FakeDataSource:
        return FakeDataSource({"user_test_results": list(results), "user_profiles": list(profiles)})
    return make


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def instant_retry():
    """RetryExecutor whose backoff sleeps are recorded instead of awaited."""
    return RetryExecutor(max_retries=2, base_delay=1.0, sleep=AsyncMock())
