"""Database engine factory and session management."""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, event
from sqlalchemy import create_engine as sa_create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from exbridge.config.settings import Settings
from exbridge.db.base import Base


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside it.

    pysqlite starts transactions lazily and would otherwise let the first
    SAVEPOINT open (and its RELEASE commit) the outer transaction.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine(settings: Settings) -> Engine:
    """Create a SQLAlchemy engine from settings.

    Args:
        settings: Application settings containing database URL.

    Returns:
        Configured SQLAlchemy engine.
    """
    connect_args: dict = {}
    kwargs: dict = {}

    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # An in-memory database only lives as long as its single connection
        if ":memory:" in settings.database_url or settings.database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool

    engine = sa_create_engine(
        settings.database_url,
        connect_args=connect_args,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
        **kwargs,
    )
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def create_tables(engine: Engine) -> None:
    """Create all database tables.

    Args:
        engine: SQLAlchemy engine.
    """
    from exbridge.db import models as _  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine) -> None:
    """Drop all database tables.

    Args:
        engine: SQLAlchemy engine.
    """
    Base.metadata.drop_all(bind=engine)


@contextmanager
def get_session(engine: Engine) -> Generator[Session, None, None]:
    """Get a database session context manager.

    Args:
        engine: SQLAlchemy engine.

    Yields:
        Database session that will be automatically committed on success
        or rolled back on failure.
    """
    session = sessionmaker(bind=engine, expire_on_commit=False)()

    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
