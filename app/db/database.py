from typing import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from app.config import Settings

# Base class for declarative models
Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def is_memory_database(database_url: str) -> bool:
    """True for SQLite URLs that point at a private in-memory database."""
    url = make_url(database_url)
    return url.database in (None, "", ":memory:") or url.query.get("mode") == "memory"


def create_db_engine(settings: Settings) -> Engine:
    """
    Build the process-wide engine. Called once at startup, reused for every request.
    """
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        if is_memory_database(settings.database_url):
            # Single shared connection so an in-memory database survives across threads
            return create_engine(
                settings.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        # File database: one connection per session, writers wait on the lock instead of failing
        return create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )

    # Connection pool optimization (defaults: pool_size=5, max_overflow=10, recycle=-1, pre_ping=False)
    return create_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=3600,      # Recycle connections after 1 hour
        pool_pre_ping=True,     # Test connection health before use
        pool_timeout=10,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False so returned rows stay readable after the session closes
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Commit on success, roll back on error, always close."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
