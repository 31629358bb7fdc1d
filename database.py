"""
SQLAlchemy engine and session handling for the RevenueForge API.

One relational database backs the append-only audit log, the user and catalog
tables and, by default, the shared rate limit counters, so every serving
instance must point at the same DATABASE_URL. PostgreSQL is the production
target; SQLite is accepted for local development and the test suite, with WAL
journaling and a busy timeout so threadpool writers do not trip over each other.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from db_models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None

SQLITE_BUSY_TIMEOUT_MS = 5000


def _backend(database_url: str) -> str:
    return make_url(database_url).get_backend_name()


def ensure_database_exists(database_url: str) -> None:
    """Create the target PostgreSQL database when it is missing. Other backends are left alone."""
    url: URL = make_url(database_url)
    if url.get_backend_name() != "postgresql":
        return
    if not url.database:
        raise RuntimeError("DATABASE_URL must name a database")

    maintenance = create_engine(url.set(database="postgres"), isolation_level="AUTOCOMMIT")
    try:
        with maintenance.connect() as conn:
            found = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": url.database},
            ).first()
            if found is None:
                quoted = conn.dialect.identifier_preparer.quote(url.database)
                conn.execute(text(f"CREATE DATABASE {quoted}"))
                logger.info("Created database %s", url.database)
    finally:
        maintenance.dispose()


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def _engine_options(database_url: str, pool_size: Optional[int]) -> Dict[str, Any]:
    if _backend(database_url) == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": pool_size or int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "1800")),
    }


def init_database(database_url: str, echo: bool = False, pool_size: Optional[int] = None) -> None:
    global _engine, _session_factory
    if _engine is not None:
        logger.debug("Database engine already configured")
        return

    engine = create_engine(database_url, echo=echo, **_engine_options(database_url, pool_size))
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_pragmas)

    _engine = engine
    _session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    logger.info("Database engine configured for %s", engine.dialect.name)


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Unit of work: commits when the block exits cleanly, rolls back and re-raises otherwise."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_database() first")
    session: Session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def connection_test() -> bool:
    if _engine is None:
        return False
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database readiness check failed: %s", exc)
        return False
    return True


def init_db() -> None:
    if _engine is None:
        raise RuntimeError("Database not initialized; call init_database() first")
    Base.metadata.create_all(bind=_engine)
    logger.info("Database schema ensured: %s", ", ".join(sorted(Base.metadata.tables)))
