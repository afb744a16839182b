from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, SessionTransactionOrigin, sessionmaker

from stockledger.app.core.config import get_settings
from stockledger.app.core.errors import ConcurrencyConflict

SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

# set on Session.info while an atomic() block owns the session's transaction
UNIT_OF_WORK_KEY = "stockledger.unit_of_work"

# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})


def create_db_engine(url: str | None = None, **kwargs: Any) -> Engine:
    """
    Build an engine for ``url`` (defaults to the configured DATABASE_URL).

    On SQLite the pysqlite driver is switched to explicit ``BEGIN IMMEDIATE``:
    SAVEPOINTs (nested ``atomic()`` blocks) roll back correctly, and writers
    queue on the database lock the way PostgreSQL writers queue on
    ``FOR UPDATE`` row locks.
    """
    engine = create_engine(url or get_settings().database_url, pool_pre_ping=True, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@contextmanager
def session_scope(engine: Engine | None = None) -> Iterator[Session]:
    db = SessionLocal(bind=engine or create_db_engine())
    try:
        yield db
    finally:
        db.close()


def caller_owns_transaction(db: Session) -> bool:
    """
    True when the open transaction belongs to someone else: an enclosing
    ``atomic()`` block or an explicit ``db.begin()``. A transaction that
    autobegin opened for a plain read is nobody's and does not count.
    """
    if db.info.get(UNIT_OF_WORK_KEY):
        return True
    txn = db.get_transaction()
    return txn is not None and txn.origin is not SessionTransactionOrigin.AUTOBEGIN


def _is_transient(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in TRANSIENT_SQLSTATES


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    All-or-nothing unit of work.

    - nobody owns the transaction (idle session, or one autobegun by a read):
      this block owns it and COMMITs on success
    - the caller owns it: SAVEPOINT, the caller commits

    Any exception rolls back everything done inside the block and propagates.
    Deadlocks and serialization failures surface as ConcurrencyConflict.
    """
    try:
        if caller_owns_transaction(db):
            with db.begin_nested():
                yield db
        else:
            db.info[UNIT_OF_WORK_KEY] = True
            try:
                yield db
                db.commit()
            except BaseException:
                db.rollback()
                raise
            finally:
                db.info.pop(UNIT_OF_WORK_KEY, None)
    except DBAPIError as exc:
        if _is_transient(exc):
            raise ConcurrencyConflict(
                f"Transaction aborted by the database: {exc.orig}",
                sqlstate=getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None),
            ) from exc
        raise
