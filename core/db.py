"""
core/db.py -- Engine construction shared by every SQLAlchemy Core store.

Each store owns its own MetaData and tables; this module only knows how to
open a connection pool that is safe for the way the stores are used (sync
FastAPI handlers on a thread pool, dispatcher worker threads).
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

# Seconds a SQLite writer waits on a locked database before raising.
_SQLITE_BUSY_TIMEOUT = 15


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # SQLite requires check_same_thread=False when the same pooled
        # connection may be used from threads managed by the ASGI server.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
