"""Database connection and session management."""

from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()


def create_database_engine(database_url: str = "sqlite:///./workflow_engine.db",
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a database engine with settings suited to the URL's backend."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    # Worker threads share the SQLite connection.
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the models on Base.metadata
    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
