"""
DocVault Database Session Management.

Single entry point for repository DB initialisation plus the context manager
every store operation runs inside.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker

from docvault.db.base import Base, engine_registry

logger = logging.getLogger("docvault.db.session")

ENGINE_NAME = "docvault"


def init_repository_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Register the repository engine and return its session factory.

    Args:
        db_url:        SQLAlchemy URL (postgresql://... in production,
                       sqlite:// for tests and local development).
        create_tables: When True, run Base.metadata.create_all(). Use for
                       ``docvault init`` and tests only.

    Returns:
        A ``sessionmaker`` bound to the engine. The change feed attaches its
        listeners to this factory, so every component must share it.
    """
    # Importing the models registers their tables on Base.metadata
    from docvault.db import models  # noqa: F401

    engine_registry.dispose(ENGINE_NAME)
    engine_registry.register(
        ENGINE_NAME, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )
    engine = engine_registry.get(ENGINE_NAME)

    if create_tables:
        Base.metadata.create_all(engine)
        logger.info("Repository tables created")

    return engine_registry.get_session_factory(ENGINE_NAME)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for repository sessions with auto-commit/rollback.

    Usage:
        with session_scope(factory) as session:
            node = session.get(NodeRecord, node_id)
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

