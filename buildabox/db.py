"""Run history database for buildabox.

This module handles:
- Engine creation for the run history database
- Creating the history tables on first use
- Transactional session scopes
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for the run history models."""

    pass


def get_engine(db_url: str) -> Engine:
    """Create a SQLAlchemy engine for the history database.

    For file-backed SQLite the parent directory is created, since the
    default location lives under the project root and may not exist yet.

    Args:
        db_url: Database URL.

    Returns:
        SQLAlchemy Engine instance.
    """
    # Targets finish on worker threads while the session is owned by the caller
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_path = db_url.removeprefix("sqlite:///")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def create_all_tables(engine: Engine) -> None:
    """Create the run history tables if they do not exist."""
    # Register the models with the mapper before creating tables
    from buildabox.builds import models as builds_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_history(db_url: str) -> sessionmaker[Session]:
    """Open the run history database, creating its tables on first use.

    Args:
        db_url: Database URL.

    Returns:
        Session factory bound to the database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on error.

    Args:
        session_factory: Session factory from open_history().

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "open_history",
]
