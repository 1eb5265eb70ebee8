# datasource/sql.py

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Table, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from iqstats.database import Base
from iqstats.datasource.base import DataSourceError, Filter, Order

log = logging.getLogger(__name__)


class SqlDataSource:
    """DataSource over the local SQLAlchemy tables. Blocking calls run in a worker thread."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _table(self, name: str) -> Table:
        table = Base.metadata.tables.get(name)
        if table is None:
            raise DataSourceError(f"Unknown table: {name}", code="unknown_table")
        return table

    @staticmethod
    def _column(table: Table, name: str):
        if name not in table.c:
            raise DataSourceError(f"Unknown column {table.name}.{name}", code="unknown_column")
        return table.c[name]

    def _where(self, table: Table, filters: Sequence[Filter]):
        clauses = []
        for f in filters:
            col = self._column(table, f.column)
            if f.op == "eq":
                clauses.append(col == f.value)
            elif f.op == "neq":
                clauses.append(col != f.value)
            elif f.op == "gt":
                clauses.append(col > f.value)
            elif f.op == "gte":
                clauses.append(col >= f.value)
            elif f.op == "lt":
                clauses.append(col < f.value)
            elif f.op == "lte":
                clauses.append(col <= f.value)
            elif f.op == "is_null":
                clauses.append(col.is_(None))
            elif f.op == "not_null":
                clauses.append(col.is_not(None))
            elif f.op == "in":
                clauses.append(col.in_(list(f.value)))
        return clauses

    def _run(self, stmt, consume):
        """Execute ``stmt`` and hand the result to ``consume`` while the connection is open."""
        try:
            with self.engine.connect() as conn:
                return consume(conn.execute(stmt))
        except (OperationalError, PoolTimeoutError) as e:
            raise DataSourceError(f"Database unavailable: {e}", code="operational", retryable=True) from e
        except SQLAlchemyError as e:
            raise DataSourceError(f"Database error: {e}", code=type(e).__name__) from e

    def _query_sync(self, table_name, filters, order, offset, limit) -> List[Dict[str, Any]]:
        table = self._table(table_name)
        stmt = select(table).where(*self._where(table, filters))
        for o in order:
            col = self._column(table, o.column)
            stmt = stmt.order_by(col.desc() if o.descending else col.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._run(stmt, lambda result: [dict(row._mapping) for row in result])

    def _count_sync(self, table_name, filters) -> int:
        table = self._table(table_name)
        stmt = select(func.count()).select_from(table).where(*self._where(table, filters))
        return int(self._run(stmt, lambda result: result.scalar_one()))

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = await asyncio.to_thread(self._query_sync, table, filters, order, offset, limit)
        log.debug("query %s offset=%s limit=%s → %d rows", table, offset, limit, len(rows))
        return rows

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        return await asyncio.to_thread(self._count_sync, table, filters)
