from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rmswatch.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"

# Columns added after the first release; created on older databases by migrate_db().
_LATE_COLUMNS = {
    "opportunities": {
        "risk_reviewed": "VARCHAR(200)",
        "risk_mitigation_plan": "INTEGER",
        "risk_mitigation_notes": "TEXT",
        "risk_last_updated": "TIMESTAMP",
        "raw_json": "TEXT DEFAULT '{}'",
    },
    "webhook_events": {
        "payload_json": "TEXT DEFAULT '{}'",
    },
}


def database_url() -> str:
    """Resolve the database URL from the environment, defaulting to a local SQLite file."""
    url = os.environ.get("DATABASE_URL") or os.environ.get("POSTGRES_URL")
    if url:
        # Hosted Postgres providers still hand out the legacy scheme
        if url.startswith("postgres://"):
            url = "postgresql+psycopg://" + url[len("postgres://"):]
        elif url.startswith("postgresql://"):
            url = "postgresql+psycopg://" + url[len("postgresql://"):]
        return url
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DATA_DIR / 'rmswatch.db'}"


def database_configured() -> bool:
    return bool(os.environ.get("DATABASE_URL") or os.environ.get("POSTGRES_URL"))


def init_db(url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = url or database_url()
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        migrate_db(_engine)
        log.info("Database ready (%s)", _engine.url.render_as_string(hide_password=True))


def migrate_db(engine: Engine) -> list[str]:
    """Create missing tables and add columns missing from older databases.

    Returns the list of changes applied, as ``table.column`` or ``table``.
    """
    inspector = sa_inspect(engine)
    existing_tables = set(inspector.get_table_names())
    changes = [t for t in Base.metadata.tables if t not in existing_tables]
    Base.metadata.create_all(engine)
    for table, columns in _LATE_COLUMNS.items():
        if table not in existing_tables:
            continue
        present = {col["name"] for col in inspector.get_columns(table)}
        for name, ddl in columns.items():
            if name in present:
                continue
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
            changes.append(f"{table}.{name}")
    if changes:
        log.info("Applied schema changes: %s", ", ".join(changes))
    return changes


def get_engine() -> Engine:
    with _lock:
        if _engine is None:
            raise RuntimeError("init_db() has not been called")
        return _engine


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
