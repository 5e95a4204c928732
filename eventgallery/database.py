"""Database helpers for EventGallery."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings

DATABASE_URL = f"sqlite:///{settings.database_path}"
SQLITE_BUSY_TIMEOUT = 30


def make_engine(url: str, *, serialize_writers: bool | None = None) -> Engine:
    """Create an engine for *url*.

    With ``serialize_writers`` (the ``exact_capacity`` setting by default)
    SQLite transactions open with ``BEGIN IMMEDIATE``: the write lock is taken
    up front, so a capacity check and the insert that follows it cannot
    interleave with another writer. Competing writers wait for the busy
    timeout instead of failing with "database is locked".
    """
    if serialize_writers is None:
        serialize_writers = settings.exact_capacity
    return create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        execution_options={"sqlite_begin": "IMMEDIATE"} if serialize_writers else {},
        future=True,
    )


engine = make_engine(DATABASE_URL)

SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


def _is_sqlite(dbapi_connection) -> bool:
    return type(dbapi_connection).__module__.startswith(("sqlite3", "pysqlite"))


@event.listens_for(Engine, "connect")
def _configure_sqlite_connection(dbapi_connection, connection_record):
    """Enable FK cascades and let SQLAlchemy own BEGIN so SAVEPOINTs work."""
    if not _is_sqlite(dbapi_connection):
        return
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@event.listens_for(Engine, "begin")
def _begin_sqlite_transaction(conn):
    if conn.dialect.name == "sqlite":
        mode = conn.get_execution_options().get("sqlite_begin")
        conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
