"""Release registry database access.

The registry is a small append-only SQLAlchemy store; SQLite is the
default and the engine is shared across build worker threads.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from variant_release.config import get_settings


class Base(DeclarativeBase):
    """Declarative base of the registry tables."""


def get_engine(db_url: str | None = None) -> Any:
    """Create an engine for the registry.

    Args:
        db_url: Database URL (default: VARREL_DB_URL).

    Returns:
        SQLAlchemy Engine. For a SQLite file the parent directory is
        created first.
    """
    url = db_url or get_settings().db_url
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        path = url.removeprefix("sqlite:///")
        if url.startswith("sqlite:///") and path not in ("", ":memory:"):
            Path(path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args)


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to engine (default: from settings)."""
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Open a session that commits on success and rolls back on error."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the registry tables if they do not exist."""
    # Registers ReleaseRecord and ReleaseArtifact on Base.metadata
    from variant_release.releases import models  # noqa: F401

    Base.metadata.create_all(bind=engine if engine is not None else get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
