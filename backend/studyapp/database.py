"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine for the local
SQLite database and provides small helpers used by the application and
tests. The database location comes from `settings.DATABASE_URL`.
"""

from contextlib import contextmanager

from sqlmodel import SQLModel, create_engine, Session

from .config import settings


def make_engine(url: str, busy_timeout: float = None):
    """Build an engine for `url`.

    SQLite connections get a busy timeout so concurrent writers wait for
    the lock instead of failing straight away.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": busy_timeout or settings.SQLITE_BUSY_TIMEOUT_SECONDS,
        }
    return create_engine(url, echo=False, connect_args=connect_args)


engine = make_engine(settings.DATABASE_URL)


def create_db_and_tables(bind=None):
    """Create database tables using SQLModel metadata.

    This function is intended for local development and lightweight
    scripts; production deployments should rely on a proper migration
    tool (alembic) instead.
    """
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session


@contextmanager
def transaction(session: Session):
    """Scope a unit of work on `session`.

    Commits when the block exits normally and rolls back when it raises,
    so every exit path releases the transaction.
    """
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
