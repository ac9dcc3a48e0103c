"""Database connection and session management."""
from typing import Any, Dict, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from payrail.config import Settings, get_settings
from payrail.database.models import Base

# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_engine(settings: Optional[Settings] = None) -> Engine:
    """
    Get or create the database engine.

    Returns:
        Engine: SQLAlchemy engine instance
    """
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        kwargs: Dict[str, Any] = {"echo": settings.database_echo}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        _engine = create_engine(settings.database_url, **kwargs)
    return _engine


def get_session_factory(settings: Optional[Settings] = None) -> sessionmaker[Session]:
    """
    Get or create the session factory.

    Returns:
        sessionmaker: SQLAlchemy session factory
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            get_engine(settings),
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def init_db(settings: Optional[Settings] = None) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    Base.metadata.create_all(get_engine(settings))


def close_db() -> None:
    """Close database connections and dispose of the engine."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
        _engine = None
        _session_factory = None
