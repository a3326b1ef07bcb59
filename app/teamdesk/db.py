from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Pool sizing only matters for a real server database.
_POSTGRES_POOL = {"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}


def _configure_sqlite(engine: Engine) -> None:
    """
    pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT handling.
    Take over transaction start and turn on FK enforcement per connection.
    """

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):  # type: ignore[no-redef]
        conn.exec_driver_sql("BEGIN")


def build_engine(db_url: str) -> Engine:
    """Engine for the app, scripts and migrations alike."""
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update(_POSTGRES_POOL)
    engine = create_engine(db_url, **kwargs)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker:
    # expire_on_commit=False: handlers serialize objects after committing
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    if app.config.get("ENV") not in ("prod", "production"):
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = build_sessionmaker(engine)
    logger.info("Database engine ready (dialect=%s)", engine.dialect.name)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session, created on first use and closed on teardown.
    Handlers own the transaction: commit on success, roll back on error.
    """
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        sm = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = g.db_session = sm()
    return s


def teardown_db_session(exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    try:
        # Anything left uncommitted at this point is discarded
        s.close()
    except Exception:
        logger.exception("Failed to close DB session (request error: %r)", exc)


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request unit of work for scripts and tests: commits on success,
    rolls back and re-raises on error.
    """
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
