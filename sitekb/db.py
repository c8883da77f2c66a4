"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata bases, and helpers:
- Base: declarative base for the relational store (sites, knowledge bases, documents).
- VectorBase: separate declarative base for the pgvector table, created lazily by
  the vector client rather than by init_db.
- get_engine / get_sessionmaker: lazily built from settings.DATABASE_URL.
- init_db: creates the relational tables.
- session_scope: context-managed transactional scope for imperative workflows.

Configuration is read from sitekb.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from sitekb.config import settings

Base = declarative_base()
VectorBase = declarative_base()

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
    return _engine


def get_sessionmaker() -> sessionmaker:
    """Return the process-wide session factory bound to get_engine()."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine(), future=True)
    return _SessionLocal


def init_db(engine: Optional[Engine] = None) -> None:
    """Create the relational store tables.

    This function is idempotent and safe to run multiple times.

    Args:
        engine: Optional engine; defaults to get_engine().
    """
    # Import models after Base is defined
    from sitekb import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Args:
        factory: Optional session factory; defaults to get_sessionmaker().

    Yields:
        Session: A SQLAlchemy session.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = (factory or get_sessionmaker())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
