from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from jury.config import get_settings
from jury.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def create_db_engine(url: str) -> Engine:
    """Build an engine for *url* with the SQLite settings the core relies on.

    File-backed SQLite databases get their parent directory created, and
    in-memory ones share a single connection so every session sees the same
    data. Foreign keys are enforced on SQLite so application deletes cascade.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
    else:
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = url or get_settings().database_url
        _engine = create_db_engine(url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        log.info("Database ready at %s", make_url(url).render_as_string(hide_password=True))


def session_factory() -> sessionmaker:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return session_factory()()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``.

    Usage::

        def db_session() -> Generator[Session, None, None]:
            yield from session_generator()
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
