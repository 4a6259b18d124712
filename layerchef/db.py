"""Build history database.

BuildRecord, DependencyLayer and RuntimeImage rows live in one SQLite
database by default. Several ``layerchef build`` processes may share it,
so SQLite connections wait for locks instead of failing immediately.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from layerchef.config import get_settings

# Seconds a SQLite connection waits for another writer
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Declarative base shared by build, layer and image models."""

    pass


def _sqlite_file(db_url: str) -> Path | None:
    if not db_url.startswith("sqlite:///"):
        return None
    db_path = db_url.removeprefix("sqlite:///")
    if not db_path or db_path == ":memory:":
        return None
    return Path(db_path)


def get_engine(db_url: str | None = None) -> Any:
    """Create an engine for the history database.

    Args:
        db_url: Database URL; defaults to ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        # Stage threads and concurrent builds share the database
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        db_file = _sqlite_file(db_url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to an engine.

    Objects stay usable after commit, since the pipeline commits at every
    stage transition and keeps working with the same BuildRecord.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a session that commits on success and rolls back on error.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the build, layer and image tables if missing."""
    # Models register themselves with Base on import
    from layerchef.builds import models as builds_models  # noqa: F401
    from layerchef.cache import models as cache_models  # noqa: F401
    from layerchef.images import models as images_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Any | None = None) -> None:
    """Drop every table. Only meant for tests."""
    if engine is None:
        engine = get_engine()
    Base.metadata.drop_all(bind=engine)


def init_database(db_url: str | None = None) -> sessionmaker[Session]:
    """Create tables and return a session factory for the history database."""
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "SQLITE_BUSY_TIMEOUT",
    "Base",
    "create_all_tables",
    "drop_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_database",
]
