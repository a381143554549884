"""
Database connection management for Backroom Press.

Provides engine construction, session factories and transaction scopes.
Engines are built explicitly and handed to the services that need them.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import JSON, create_engine, event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backroom.config import Settings, settings
from backroom.models.db import Base

logger = logging.getLogger(__name__)


def _set_json_type(target, connection, **kw):  # pragma: no cover - compat hook
    """Replace JSONB with JSON for SQLite compatibility."""
    if connection.dialect.name != "sqlite":
        return
    for table in target.tables.values():
        for column in table.columns:
            if isinstance(column.type, postgresql.JSONB):
                column.type = JSON()


if not event.contains(Base.metadata, "before_create", _set_json_type):
    event.listen(Base.metadata, "before_create", _set_json_type)


def create_db_engine(
    database_url: Optional[str] = None, config: Optional[Settings] = None
) -> Engine:
    """
    Create a SQLAlchemy engine for the configured database.

    In-memory SQLite URLs share a single connection so every session sees
    the same schema and data.

    Args:
        database_url: Explicit URL (defaults to the configured one)
        config: Settings to read pool options from

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    config = config or settings
    url = database_url or config.database_url

    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)

    return create_engine(
        url,
        echo=False,
        pool_size=config.db_pool_size,
        max_overflow=config.db_pool_max_overflow,
        pool_pre_ping=True,
        pool_timeout=config.db_pool_timeout,
        pool_recycle=config.db_pool_recycle,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Yields:
        Session: A SQLAlchemy session that commits on success and rolls
        back on exception

    Example:
        >>> with session_scope(factory) as db:
        >>>     store = BackroomStore(db)
        >>>     store.get_conversation(conversation_id)
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


def init_db(engine: Engine) -> None:
    """
    Create all tables.

    The production schema is managed outside this package; this is used for
    SQLite development databases and tests.
    """
    Base.metadata.create_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
