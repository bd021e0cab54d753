"""Database connection and session management."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


DEFAULT_DATABASE_URL = "sqlite:///./nodeflow.db"

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the global database engine."""
    global _engine, _session_factory

    if _engine is None:
        database_url = database_url or DEFAULT_DATABASE_URL

        if connect_args is None:
            connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

        if database_url.startswith("sqlite"):
            # One shared connection keeps ":memory:" databases alive across sessions.
            _engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        else:
            _engine = create_engine(database_url, echo=echo, connect_args=connect_args)

        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

    return _engine


def init_database(database_url: Optional[str] = None, echo: bool = False) -> sessionmaker:
    """Create the engine, make sure all tables exist and return the session factory."""
    from . import models  # noqa: F401  registers the tables on Base

    engine = get_database_engine(database_url, echo=echo)
    Base.metadata.create_all(bind=engine)
    return get_session_factory()


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        get_database_engine()
    return _session_factory


def reset_database_engine():
    """Dispose of the global engine (mainly for testing)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=get_database_engine())
