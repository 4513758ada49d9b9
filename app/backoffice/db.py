"""Engine and session plumbing shared by the web app, CLI scripts and tests."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Pool sizing for Postgres; SQLite keeps SQLAlchemy's defaults.
POSTGRES_POOL = {"pool_size": 5, "max_overflow": 10, "pool_timeout": 30, "pool_recycle": 1800}


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def build_engine(database_url: str, *, pooled: bool = True) -> Engine:
    """Create an engine for DATABASE_URL.

    SQLite connections get foreign key enforcement so ON DELETE rules on
    ledger lines, menu items and chat messages behave the same as on Postgres.
    """
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("postgres") and pooled:
        kwargs.update(POSTGRES_POOL)
    engine = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        _enable_sqlite_foreign_keys(engine)
    return engine


def _session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


@contextmanager
def _unit_of_work(factory: sessionmaker) -> Iterator[Session]:
    s: Session = factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = _session_factory(engine)


def db_session(app: Flask | None = None) -> Session:
    """Session bound to the current request, opened lazily and closed on teardown."""
    s = g.get("db_session")
    if s is None:
        factory = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = g.db_session = factory()
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s = g.pop("db_session", None)
    if s is not None:
        s.close()


def session_scope(app: Flask):
    """Commit-or-rollback session outside a request (tests, background work)."""
    return _unit_of_work(app.extensions["sqlalchemy_sessionmaker"])


@contextmanager
def script_session(database_url: str) -> Iterator[Session]:
    """Session for one-off CLI runs; the engine is disposed when the block exits."""
    engine = build_engine(database_url, pooled=False)
    try:
        with _unit_of_work(_session_factory(engine)) as s:
            yield s
    finally:
        engine.dispose()
