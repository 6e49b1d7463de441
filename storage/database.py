"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Manages the SQLAlchemy engine and sessions for the ledger store.

- Builds the engine (pooled for server databases, a single shared
  connection for in-memory SQLite)
- Creates the schema
- Provides transaction scopes that commit or roll back as a unit

============================================================
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.exceptions import StorageError
from storage.models.base import Base


logger = logging.getLogger(__name__)


def _redact(url: str) -> str:
    return url.split("@")[-1]


class Database:
    """
    Engine and session factory for one database URL.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 1800,
    ):
        """
        Args:
            url: SQLAlchemy database URL
            echo: Log SQL statements
            pool_size: Pooled connections (server databases only)
            max_overflow: Connections beyond pool_size
            pool_recycle: Recycle connections after N seconds
        """
        self._url = url
        self._engine = self._create_engine(url, echo, pool_size, max_overflow, pool_recycle)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info(f"Database engine created for {_redact(url)}")

    @staticmethod
    def _create_engine(
        url: str,
        echo: bool,
        pool_size: int,
        max_overflow: int,
        pool_recycle: int,
    ) -> Engine:
        if url.startswith("sqlite"):
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine = create_engine(
                    url,
                    echo=echo,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                engine = create_engine(url, echo=echo)

            @event.listens_for(engine, "connect")
            def on_connect(dbapi_conn, connection_record):
                logger.debug("SQLite connection established")

            return engine

        return create_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        """Create all ledger tables that do not exist yet."""
        # Registers the ledger models on Base.metadata
        import storage.models.ledger  # noqa: F401

        Base.metadata.create_all(self._engine)
        logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")

    def health_check(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def session(self) -> Session:
        """
        New session. Caller commits and closes.

        Prefer transaction_scope().
        """
        return self._session_factory()

    @contextmanager
    def transaction_scope(self) -> Generator[Session, None, None]:
        """
        Commit on success, roll back on any exception.

        Raises:
            StorageError: The transaction failed at the database level
        """
        session = self.session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed")
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise StorageError(f"Transaction failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self._engine.dispose()
        logger.info(f"Database engine disposed for {_redact(self._url)}")


def create_database(url: str, echo: bool = False, create_schema: bool = True) -> Database:
    """Build a Database and optionally create the schema."""
    database = Database(url, echo=echo)
    if create_schema:
        database.create_schema()
    return database


__all__ = ["Database", "create_database"]
