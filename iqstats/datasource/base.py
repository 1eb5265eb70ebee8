"""
DataSource contract consumed by the analytics layer.

The cache and aggregation code only ever calls ``query`` and ``count``; the
concrete store (hosted PostgREST API or a local SQL database) lives behind it.
Failures cross this boundary as ``DataSourceError`` tagged with ``retryable``
so the retry loop never has to inspect codes or messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

FILTER_OPS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "is_null", "not_null", "in"})


class DataSourceError(Exception):
    """Raised by a DataSource when a query or count fails."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.retryable = retryable

    def __repr__(self) -> str:
        return (
            f"DataSourceError({str(self)!r}, code={self.code!r}, "
            f"status={self.status!r}, retryable={self.retryable})"
        )


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")

    @classmethod
    def eq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "eq", value)

    @classmethod
    def is_null(cls, column: str) -> "Filter":
        return cls(column, "is_null")

    @classmethod
    def not_null(cls, column: str) -> "Filter":
        return cls(column, "not_null")

    @classmethod
    def in_(cls, column: str, values: Sequence[Any]) -> "Filter":
        return cls(column, "in", tuple(values))


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


class DataSource(Protocol):
    """Minimal read contract: ranged query + count, both async."""

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int: ...
