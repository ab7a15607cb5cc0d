"""SQLAlchemy engine and session management.

One Database object owns an engine and its session factory. Every unit of
work runs inside session_scope(), which commits on success and rolls back on
any exception, so a caller never observes half of a multi-row write.

Based on SQLAlchemy 2.0 ORM session patterns:
https://docs.sqlalchemy.org/en/20/orm/session_basics.html
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    if not database_url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
        # A single shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    return kwargs


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.url = database_url
        self.engine: Engine = create_engine(database_url, echo=echo, **_engine_kwargs(database_url))
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite_connection)
            event.listen(self.engine, "begin", _begin_sqlite_transaction)
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Create a database from application settings."""
        return cls(settings.database_url, echo=settings.database_echo)

    def create_tables(self) -> None:
        """Create all tables known to the ORM metadata."""
        # Registers the mapped classes on Base.metadata
        from services.storage import models  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info(f"Database schema ready at {self.engine.url.render_as_string()}")

    def drop_tables(self) -> None:
        Base.metadata.drop_all(self.engine)

    def session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations.

        Usage:
            with database.session_scope() as session:
                session.add(entity)
                # Commits on successful exit, rolls back on exception
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.debug("Transaction rolled back", exc_info=True)
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """Check if the database answers a trivial query.

        Returns:
            True if SELECT 1 succeeds
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()


def _configure_sqlite_connection(dbapi_connection: Any, _connection_record: Any) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT nesting; SQLAlchemy emits it instead
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(connection: Any) -> None:
    connection.exec_driver_sql("BEGIN")
