from __future__ import annotations
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from fundmatch.config import get_settings

Base = declarative_base()

# Lazily created, module-global singletons
_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker] = None


def _create_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        # pool_pre_ping helps recover broken connections.
        return create_engine(url, pool_pre_ping=True, future=True)

    if ":memory:" in url or url.endswith("://"):
        # one shared connection so every session sees the same in-memory database
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    return engine


def get_engine() -> Engine:
    """Create the Engine on first use; reuse thereafter."""
    global _ENGINE
    if _ENGINE is None:
        url = get_settings().database_url
        if not url:
            raise RuntimeError("DATABASE_URL is not set")
        _ENGINE = _create_engine(url)
    return _ENGINE


def configure_engine(url: str) -> Engine:
    """Point the module singletons at another database (scripts, tests)."""
    global _ENGINE, _SESSION_FACTORY
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = _create_engine(url)
    _SESSION_FACTORY = None
    return _ENGINE


def get_session_factory() -> sessionmaker:
    """Create the sessionmaker on first use; reuse thereafter."""
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )
    return _SESSION_FACTORY


def SessionLocal() -> Session:
    """Return a new Session each call (FastAPI dependency will call this)."""
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
