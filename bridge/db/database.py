"""
Database connection and session management.

The engine and sessionmaker are created lazily so that importing the
application never opens a connection.
"""

from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from bridge.core.config import settings

Base = declarative_base()

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine

    if _engine is None:
        url = settings.DATABASE_URL
        kwargs = {
            "pool_pre_ping": True,
            "pool_recycle": settings.DATABASE_POOL_RECYCLE,
            # SQL logging is controlled through logging configuration
            "echo": False,
        }
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        _engine = create_engine(url, **kwargs)
    return _engine


def get_session_local() -> sessionmaker:
    """Return the process-wide sessionmaker, creating it on first use."""
    global _SessionLocal

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine()
        )
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session that is always closed."""
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()
