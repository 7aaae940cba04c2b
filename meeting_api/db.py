from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterator

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings

connect_args = {}
database_url = settings.database_url
sqlite_dir = settings.sqlite_dir


def _ensure_dir(path: str) -> str:
    try:
        os.makedirs(path, exist_ok=True)
        return path
    except PermissionError:
        fallback = os.path.abspath("./meeting-data")
        os.makedirs(fallback, exist_ok=True)
        return fallback


if database_url.startswith("sqlite:///"):
    # worker threads share the engine with request handlers
    connect_args["check_same_thread"] = False
    base_dir = _ensure_dir(sqlite_dir)
    path = database_url.replace("sqlite:///", "", 1)
    if not path.startswith("/"):
        path = os.path.join(base_dir, path)
    database_url = f"sqlite:///{os.path.abspath(path)}"

engine = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


if engine.dialect.name == "sqlite":

    @event.listens_for(engine, "connect")
    def _enable_sqlite_fk(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db() -> None:
    from .models import job, meeting  # noqa: F401

    Base.metadata.create_all(bind=engine)
    _apply_simple_migrations()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for code running outside a request (worker threads, queue)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _apply_simple_migrations() -> None:
    """Ensure newer columns exist even if the table was created before."""
    inspector = inspect(engine)
    with engine.begin() as conn:
        if "meetings" in inspector.get_table_names():
            meeting_cols = {col["name"] for col in inspector.get_columns("meetings")}
            if "job_id" not in meeting_cols:
                conn.execute(text("ALTER TABLE meetings ADD COLUMN job_id VARCHAR(255)"))
            if "duration" not in meeting_cols:
                conn.execute(text("ALTER TABLE meetings ADD COLUMN duration INTEGER"))
        if "audio_jobs" in inspector.get_table_names():
            job_cols = {col["name"] for col in inspector.get_columns("audio_jobs")}
            if "heartbeat_at" not in job_cols:
                conn.execute(text("ALTER TABLE audio_jobs ADD COLUMN heartbeat_at DATETIME"))
