# iqstats/services/retry.py
# ============================================================================
# Bounded retry with exponential backoff around a single fetch
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

from iqstats.datasource.base import DataSourceError

log = logging.getLogger(__name__)

T = TypeVar("T")

# Raw network/timeout classes that may escape a DataSource untagged
RETRYABLE_EXCEPTIONS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, DataSourceError):
        return exc.retryable
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


class RetryExecutor:
    """
    Runs a zero-argument coroutine factory up to ``max_retries + 1`` times.

    Backoff before retry ``k`` (0-based) is ``base_delay * 2 ** k``. Errors that
    are not retryable are raised at once; after the last attempt the last error
    is re-raised unchanged.
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
    ) -> T:
        retries = self.max_retries if max_retries is None else max_retries
        delay = self.base_delay if base_delay is None else base_delay
        name = getattr(operation, "__name__", repr(operation))

        for attempt in range(retries + 1):
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e):
                    log.debug(f"{name} failed with non-retryable error: {e!r}")
                    raise
                if attempt == retries:
                    log.error(f"Giving up on {name} after {attempt + 1} attempts: {e}")
                    raise
                wait = delay * 2 ** attempt
                log.warning(f"[retry {attempt + 1}/{retries}] {name} failed: {e}, retrying in {wait:.1f}s")
                await self._wait(wait)

        raise RuntimeError("unreachable")  # pragma: no cover
