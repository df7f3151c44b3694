from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from stagegate.models import Base


def create_db_engine(url: str, timeout: float = 15.0, poolclass=None) -> Engine:
    """Create an engine whose write transactions are serialized by the database.

    SQLite transactions start with ``BEGIN IMMEDIATE`` so the write lock is
    taken up front; concurrent writers wait up to *timeout* seconds and then
    fail instead of deadlocking on a lock upgrade. Other backends get a
    per-statement timeout where the driver supports one.
    """
    parsed = make_url(url)
    kwargs: dict = {}
    if poolclass is not None:
        kwargs["poolclass"] = poolclass

    if parsed.get_backend_name() == "sqlite":
        database = parsed.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout},
            **kwargs,
        )
        _enable_immediate_transactions(engine)
        return engine

    if poolclass is None:
        kwargs["pool_timeout"] = timeout
    if parsed.get_backend_name() == "postgresql":
        kwargs["connect_args"] = {"options": f"-c statement_timeout={int(timeout * 1000)}"}
    return create_engine(url, pool_pre_ping=True, **kwargs)


def _enable_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy instead of pysqlite.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Commits on a clean exit, rolls back on any exception::

        with session_scope(factory) as session:
            ...
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
