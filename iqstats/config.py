# config.py – Loading settings via pydantic-settings

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # — Data source —
    DATA_BACKEND: str = "sql"  # "sql" (SQLAlchemy) or "supabase" (PostgREST)
    DB_URL: str = "sqlite:///data/iqstats.db"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    HTTP_TIMEOUT: float = 10.0  # seconds, per request

    # — Cache TTLs (seconds) —
    LEADERBOARD_CACHE_TTL: float = 300.0
    DASHBOARD_CACHE_TTL: float = 10.0

    # — Fetch / retry —
    FETCH_MAX_RETRIES: int = 2
    FETCH_BASE_DELAY: float = 1.0  # 1s, 2s, 4s...
    FETCH_BATCH_SIZE: int = 1000   # rows per ranged query

    # — Aggregation —
    COUNTRY_MIN_SAMPLE: int = 3    # min results before a country is ranked by avg score
    TOP_COUNTRIES_LIMIT: int = 5
    PARTICIPANT_POLICY: str = "email_or_row"

    # — Logging —
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
