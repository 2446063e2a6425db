"""Database connection and session management."""

import os
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create database engine with configuration."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("AGENTFLOW_DATABASE_URL", "sqlite:///./agentflow.db")

        if connect_args is None:
            if database_url.startswith("sqlite"):
                connect_args = {"check_same_thread": False}
            else:
                connect_args = {}

        if database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        else:
            _engine = create_engine(
                database_url,
                echo=echo,
                connect_args=connect_args,
                pool_pre_ping=True
            )

        SessionLocal.configure(bind=_engine)

    return _engine


def init_database(database_url: str, echo: bool = False) -> Engine:
    """Bind the session factory to a fresh engine for the given URL."""
    reset_database_engine()
    return get_database_engine(database_url=database_url, echo=echo)


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def get_session_factory() -> sessionmaker:
    """Session factory bound to the current engine."""
    get_database_engine()
    return SessionLocal


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mappers on Base
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    Base.metadata.drop_all(bind=get_database_engine())
