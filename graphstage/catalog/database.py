"""
Engine construction for one session store.

Each session lives in its own SQLite file. A writer engine runs staging
loads with transactional DDL; a reader engine hands out pooled read-only
connections for queries.
"""

from typing import Tuple

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine

from graphstage.catalog.models import Base


def _apply_pragmas(dbapi_connection, busy_timeout: float) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout * 1000)}")
    cursor.execute("PRAGMA foreign_keys = OFF")
    cursor.close()


def create_writer_engine(path: str, busy_timeout: float = 5.0) -> Engine:
    """
    Engine used by staging calls.

    pysqlite's own transaction handling skips BEGIN before DDL, so it is
    disabled and SQLAlchemy's begin event issues the BEGIN instead. This
    keeps CREATE/ALTER TABLE inside the same transaction as the row load.
    """
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        _apply_pragmas(dbapi_connection, busy_timeout)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Connection):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_reader_engine(path: str, busy_timeout: float = 5.0) -> Engine:
    """Engine used by queries; every connection refuses writes."""
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        _apply_pragmas(dbapi_connection, busy_timeout)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA query_only = ON")
        cursor.close()

    return engine


def create_store_engines(path: str, busy_timeout: float = 5.0) -> Tuple[Engine, Engine]:
    """
    Create the writer and reader engines for a store file and make sure
    the catalog tables exist.

    Returns:
        Tuple of (writer, reader)
    """
    writer = create_writer_engine(path, busy_timeout)
    init_catalog(writer)
    reader = create_reader_engine(path, busy_timeout)
    return writer, reader


def init_catalog(engine: Engine) -> None:
    """Create the catalog tables of a session store."""
    with engine.begin() as conn:
        Base.metadata.create_all(bind=conn)


def check_store_connection(engine: Engine) -> bool:
    """
    Check if a store answers queries.

    Returns:
        True if connection is successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
