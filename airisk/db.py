"""SQLite engine and session lifecycle.

One process-wide engine bound to ``DATABASE_PATH``. Connections enforce foreign
keys so ``ON DELETE CASCADE`` applies to scores, history, portfolio entries and
news impacts. Request handlers get a session from :func:`session_generator`;
streamed runs and the MCP server open their own via :func:`get_session` /
:func:`session_scope`.
"""
from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, inspect as sa_inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from airisk.models import Base, User

log = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"

# (table, column) -> DDL type for columns added after the first release
COLUMN_MIGRATIONS: dict[tuple[str, str], str] = {
    ("assessments", "domain_summaries"): "TEXT",
    ("companies", "description"): "TEXT",
}

_state_lock = threading.Lock()
_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None
_db_path: Path | None = None


def default_db_path() -> Path:
    return Path(os.environ.get("DATABASE_PATH") or DATA_DIR / "airisk.db")


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Turn on FK enforcement (and ON DELETE CASCADE) for every new connection."""
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _build_engine(db_path: Path) -> Engine:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    enable_sqlite_foreign_keys(engine)
    return engine


def init_db(db_path: str | Path | None = None) -> None:
    """(Re)bind the module to *db_path*, creating tables, migrating and seeding as needed."""
    global _engine, _factory, _db_path
    path = Path(db_path) if db_path is not None else default_db_path()
    with _state_lock:
        if _engine is not None:
            _engine.dispose()
        engine = _build_engine(path)
        Base.metadata.create_all(engine)
        _apply_column_migrations(engine)
        _seed_admin_user(engine)
        _engine = engine
        _factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        _db_path = path
    log.info("Database ready at %s", path)


def _apply_column_migrations(engine: Engine) -> None:
    inspector = sa_inspect(engine)
    for (table, column), ddl_type in COLUMN_MIGRATIONS.items():
        if not inspector.has_table(table):
            continue
        if column in {c["name"] for c in inspector.get_columns(table)}:
            continue
        with engine.begin() as conn:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
        log.info("Added %s.%s column", table, column)


def _seed_admin_user(engine: Engine) -> None:
    """Create the initial admin account if the users table is empty."""
    with Session(engine) as session:
        if session.execute(select(User.id).limit(1)).first() is not None:
            return
        username = os.environ.get("ADMIN_USERNAME", "admin")
        session.add(User(username=username, name="Administrator", role="admin"))
        session.commit()
        log.info("Seeded admin user %r", username)


def get_session() -> Session:
    with _state_lock:
        factory = _factory
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session that is rolled back on error and always closed."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """:func:`session_scope` in the shape FastAPI's ``Depends`` expects."""
    with session_scope() as session:
        yield session


def current_db_path() -> Path | None:
    return _db_path
