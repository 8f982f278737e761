"""
Database Engine
===============

Engine and session management for the staging and catalog tables.

Several dispatchers may poll the same SQLite file, so SQLite connections run
in WAL mode with a busy timeout: a dispatcher claiming a batch waits for a
concurrent writer instead of failing with "database is locked".
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DB_PATH = Path.home() / ".market_manager" / "market_manager.db"

SQLITE_BUSY_TIMEOUT_MS = 5000


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Resolve the database URL.

    Precedence: the explicit ``db_path``, then DATABASE_URL (a full URL for
    any backend, or a bare SQLite file path), then DEFAULT_DB_PATH. The
    parent directory of a SQLite file is created when missing.
    """
    if db_path is None and os.environ.get("DATABASE_URL"):
        url = os.environ["DATABASE_URL"]
        if "://" in url:
            return url
        db_path = url

    path = Path(db_path) if db_path is not None else DEFAULT_DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_db_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """
    Create an engine for the market manager database.

    Args:
        db_path: Optional path to a SQLite database file
        echo: Log every SQL statement

    Returns:
        Engine; SQLite engines are shared across threads and use WAL
    """
    url = get_database_url(db_path)
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo)

    engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _configure_sqlite)
    return engine


# Process-wide engine and session factory, created on first use
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path, echo)
    return _engine


def get_session_factory(db_path: Path | str | None = None) -> sessionmaker[Session]:
    """Session factory handed to the dispatcher's handlers and the CLI."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine(db_path))
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the process-wide engine so the next call picks up a new DATABASE_URL."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_session(db_path: Path | str | None = None) -> Generator[Session, None, None]:
    """
    Open a session from the process-wide factory and close it on exit.

    Nothing is committed automatically; callers commit their own work.
    """
    session = get_session_factory(db_path)()
    try:
        yield session
    finally:
        session.close()


def init_db(db_path: Path | str | None = None) -> None:
    """Create the catalog and staging tables that do not exist yet."""
    from market_manager.db import models_staging  # noqa: F401  (registers staging tables)
    from market_manager.db.models import Base

    Base.metadata.create_all(bind=get_engine(db_path))
