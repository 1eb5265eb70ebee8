# database.py – SQLAlchemy setup + result/profile tables (local store)

import uuid
from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

# Declarative base for the models
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class UserProfile(Base):
    __tablename__ = "user_profiles"
    id = Column(String, primary_key=True, default=_uuid)
    full_name = Column(String, nullable=False)
    age = Column(Integer)
    gender = Column(String)
    location = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)


class TestResult(Base):
    """Unified results table: registered users (user_id set) and guests (user_id null)."""
    __tablename__ = "user_test_results"
    __test__ = False

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=True, index=True)
    test_type = Column(String, nullable=False, default="iq")
    score = Column(Integer, nullable=False, index=True)
    duration_seconds = Column(Integer)
    tested_at = Column(DateTime, default=datetime.utcnow, index=True)
    name = Column(String)
    email = Column(String, index=True)
    age = Column(Integer)
    gender = Column(String)
    country = Column(String)
    country_code = Column(String)
    guest_name = Column(String)
    guest_age = Column(Integer)
    guest_location = Column(String)


def make_engine(db_url: str) -> Engine:
    """Create the engine; for SQLite, create the parent folder of the .db file."""
    if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
        db_file = db_url.replace("sqlite:///", "")
        Path(db_file).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, future=True)

def init_db(engine: Engine) -> None:
    """Create the tables if they don't exist yet."""
    Base.metadata.create_all(bind=engine)
