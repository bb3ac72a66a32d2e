"""
Engine and session lifecycle for the token, symbol and quote tables.

PostgreSQL in production. Tests point DATABASE_URL at a temporary SQLite
file; stores run their queries from the threadpool, so SQLite connections
must not be pinned to the thread that opened them.
"""
from contextlib import contextmanager
from typing import Any, Dict
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from quotebroker.database.models import Base

logger = logging.getLogger(__name__)

engine = None
SessionLocal = None


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}

    from quotebroker.config import settings
    return {
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
    }


def init_db(database_url: str):
    """Create the engine and session factory, then create any missing tables."""
    global engine, SessionLocal

    backend = database_url.split(":", 1)[0]
    logger.info(f"Initializing {backend} storage for tokens, symbols and quotes")

    engine = create_engine(database_url, **_engine_options(database_url))
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized successfully")


def ensure_db_initialized():
    """Initialize from settings on first use when the app lifespan did not run (scripts, tests)."""
    if SessionLocal is not None:
        return
    from quotebroker.config import settings
    if not settings.DATABASE_URL:
        raise RuntimeError("DATABASE_URL must be set before the token store is used")
    init_db(settings.DATABASE_URL)


@contextmanager
def get_db_context():
    """One unit of work: commit on success, roll back on any error."""
    ensure_db_initialized()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_db() -> bool:
    """Used by /health: True when a trivial query succeeds."""
    if engine is None:
        return False
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Database health check failed: {e}")
        return False
    return True


def close_db():
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
        logger.info("Database connection closed")
    engine = None
    SessionLocal = None
