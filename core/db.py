"""
core/db.py -- Engine construction shared by the credential and audit stores.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite connection tweaks every store needs.

    check_same_thread is off because the audit worker and the threadpool that
    runs sync route handlers share one engine.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
