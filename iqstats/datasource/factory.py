# datasource/factory.py – pick the DataSource from settings

import logging

from iqstats.config import Settings
from iqstats.database import init_db, make_engine
from iqstats.datasource.base import DataSource
from iqstats.datasource.sql import SqlDataSource
from iqstats.datasource.supabase import SupabaseClient

log = logging.getLogger(__name__)


def make_datasource(settings: Settings) -> DataSource:
    backend = settings.DATA_BACKEND.lower()
    if backend == "supabase":
        if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the supabase backend")
        log.info(f"Using PostgREST data source at {settings.SUPABASE_URL}")
        return SupabaseClient(settings.SUPABASE_URL, settings.SUPABASE_KEY, timeout=settings.HTTP_TIMEOUT)
    if backend == "sql":
        engine = make_engine(settings.DB_URL)
        init_db(engine)
        log.info(f"Using SQL data source at {engine.url.render_as_string(hide_password=True)}")
        return SqlDataSource(engine)
    raise ValueError(f"Unknown DATA_BACKEND: {settings.DATA_BACKEND}")


async def close_datasource(datasource: DataSource) -> None:
    if isinstance(datasource, SupabaseClient):
        await datasource.close()
    elif isinstance(datasource, SqlDataSource):
        datasource.engine.dispose()
