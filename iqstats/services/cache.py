# iqstats/services/cache.py
# ============================================================================
# In-memory TTL cache with stale-on-error fallback and single-flight refresh.
# One CacheManager per process; clock and DataSource are injected.
# ============================================================================

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from iqstats.datasource.base import DataSource
from iqstats.services.retry import RetryExecutor

log = logging.getLogger(__name__)

T = TypeVar("T")
Loader = Callable[[DataSource], Awaitable[Any]]


@dataclass
class CacheEntry(Generic[T]):
    payload: Optional[T] = None
    fetched_at: float = 0.0
    ttl: float = 0.0
    loaded: bool = False

    def is_fresh(self, now: float) -> bool:
        return self.loaded and (now - self.fetched_at) < self.ttl


@dataclass(frozen=True)
class CacheRead(Generic[T]):
    payload: Optional[T]
    served_from_cache: bool = False
    stale: bool = False
    error: Optional[BaseException] = None


@dataclass
class _Dataset:
    key: str
    loader: Loader
    ttl: float
    entry: CacheEntry = field(default_factory=CacheEntry)
    generation: int = 0
    inflight: Optional[asyncio.Future] = None


class CacheManager:
    """
    Per-key cache of loader results.

    ``read`` returns a fresh entry without touching the DataSource. Otherwise
    it joins (or starts) the single in-flight refresh for that key. A failed
    refresh falls back to the last good payload, even if expired.
    """

    def __init__(
        self,
        datasource: DataSource,
        retry: Optional[RetryExecutor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.datasource = datasource
        self.retry = retry or RetryExecutor()
        self._clock = clock
        self._datasets: Dict[str, _Dataset] = {}

    def register(self, key: str, loader: Loader, ttl: float) -> None:
        if key in self._datasets:
            raise ValueError(f"Cache key already registered: {key}")
        self._datasets[key] = _Dataset(key=key, loader=loader, ttl=ttl, entry=CacheEntry(ttl=ttl))

    def _dataset(self, key: str) -> _Dataset:
        try:
            return self._datasets[key]
        except KeyError:
            raise KeyError(f"Unknown cache key: {key}") from None

    def entry(self, key: str) -> CacheEntry:
        return self._dataset(key).entry

    async def read(self, key: str) -> CacheRead:
        ds = self._dataset(key)
        if ds.entry.is_fresh(self._clock()):
            log.debug(f"Using cached data for {key}")
            return CacheRead(ds.entry.payload, served_from_cache=True)
        return await self._join_refresh(ds)

    async def refresh(self, key: str) -> CacheRead:
        """Fetch regardless of freshness (still single-flight)."""
        return await self._join_refresh(self._dataset(key))

    async def _join_refresh(self, ds: _Dataset) -> CacheRead:
        task = ds.inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh(ds, ds.generation))
            ds.inflight = task
            task.add_done_callback(functools.partial(self._forget, ds))
        # Shielded: a caller going away must not cancel the shared refresh
        return await asyncio.shield(task)

    @staticmethod
    def _forget(ds: _Dataset, task: asyncio.Future) -> None:
        if ds.inflight is task:
            ds.inflight = None

    async def _refresh(self, ds: _Dataset, generation: int) -> CacheRead:
        started = self._clock()
        log.info(f"♻️ Refreshing cache for {ds.key}")

        async def load():
            return await ds.loader(self.datasource)
        load.__name__ = f"load[{ds.key}]"

        try:
            payload = await self.retry.run(load)
        except Exception as e:
            if ds.entry.loaded:
                log.warning(f"Refresh of {ds.key} failed, serving last known good data: {e}")
                return CacheRead(ds.entry.payload, served_from_cache=True, stale=True)
            log.error(f"Refresh of {ds.key} failed with no cached fallback: {e!r}")
            return CacheRead(None, error=e)

        if ds.generation != generation:
            log.info(f"Cache for {ds.key} was cleared during refresh, result not stored")
            return CacheRead(payload)

        ds.entry.payload = payload
        ds.entry.fetched_at = started
        ds.entry.loaded = True
        log.info(f"✅ Cache refreshed for {ds.key}")
        return CacheRead(payload)

    def clear(self, key: str) -> None:
        ds = self._dataset(key)
        ds.entry = CacheEntry(ttl=ds.ttl)
        ds.generation += 1
        ds.inflight = None
        log.info(f"🧹 Cache cleared for {key}")

    def clear_all(self) -> None:
        for key in self._datasets:
            self.clear(key)

    def invalidator(self, *keys: str) -> "CacheInvalidator":
        for key in keys:
            self._dataset(key)
        return CacheInvalidator(self, keys)

    def status(self) -> Dict[str, Dict[str, Any]]:
        now = self._clock()
        out: Dict[str, Dict[str, Any]] = {}
        for key, ds in self._datasets.items():
            entry = ds.entry
            out[key] = {
                "has_data": entry.loaded,
                "fetched_at": entry.fetched_at if entry.loaded else None,
                "age": (now - entry.fetched_at) if entry.loaded else None,
                "ttl": ds.ttl,
                "is_expired": not entry.is_fresh(now),
                "in_flight": ds.inflight is not None and not ds.inflight.done(),
            }
        return out


class CacheInvalidator:
    """Handle given to mutating admin actions: ``clear()`` drops the bound keys."""

    def __init__(self, manager: CacheManager, keys):
        self._manager = manager
        self.keys = tuple(keys)

    def clear(self) -> None:
        for key in self.keys:
            self._manager.clear(key)
