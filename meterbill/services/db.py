"""Database connection and session management."""

from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from meterbill.services.config import get_settings


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create engine (in-memory SQLite uses StaticPool so every session shares it)."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> Callable[[], Session]:
    """Session factory used by request handlers and background billing runs."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


_session_factory: Callable[[], Session] | None = None


def get_session_factory() -> Callable[[], Session]:
    """Get or create the process-wide session factory from settings."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(build_engine(get_settings().database_url))
    return _session_factory


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


__all__ = ["build_engine", "build_session_factory", "get_db", "get_session_factory"]
