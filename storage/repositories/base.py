"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Provides common functionality for all repositories including:
- Error handling wrappers (SQLAlchemy -> RepositoryException)
- Common query helpers
- Logging setup

Session is injected via constructor; the caller owns the
transaction boundary.

============================================================
"""

import logging
from typing import Any, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    DuplicateRecordError,
    IntegrityError,
    QueryError,
    RepositoryConnectionError,
    TransactionError,
)


T = TypeVar("T", bound=Base)


class BaseRepository:
    """
    Base class for all repositories.

    USAGE:
        class MyRepository(BaseRepository):
            def __init__(self, session: Session):
                super().__init__(session, "MyRepository")
    """

    def __init__(self, session: Session, repository_name: str) -> None:
        self._session = session
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def repository_name(self) -> str:
        return self._repository_name

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _handle_db_error(
        self,
        error: SQLAlchemyError,
        operation: str,
        context: Optional[dict] = None,
    ) -> None:
        """
        Wrap a database error in a repository exception.

        Raises:
            RepositoryException: Always
        """
        context = context or {}
        self._logger.error(
            f"Database error in {operation}: {error}",
            extra={"context": context},
            exc_info=True
        )

        if isinstance(error, OperationalError):
            raise RepositoryConnectionError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=str(error),
                cause=error,
            ) from error

        if isinstance(error, SQLAlchemyIntegrityError):
            error_str = str(error).lower()
            if "duplicate" in error_str or "unique" in error_str:
                raise DuplicateRecordError(
                    repository_name=self._repository_name,
                    constraint_field=context.get("field", "unknown"),
                    value=context.get("value", "unknown"),
                    cause=error,
                ) from error

            raise IntegrityError(
                repository_name=self._repository_name,
                operation=operation,
                message=str(error),
                cause=error,
            ) from error

        raise QueryError(
            repository_name=self._repository_name,
            operation=operation,
            original_error=str(error),
            cause=error,
        ) from error

    def _merge(self, entity: T) -> T:
        """Insert or update an entity by primary key."""
        try:
            return self._session.merge(entity)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "merge", {"entity": repr(entity)})
            raise

    def _add_all(self, entities: List[Any]) -> None:
        try:
            self._session.add_all(entities)
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "add_all", {"count": len(entities)})
            raise

    def _flush(self) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "flush")
            raise

    def _count(self, model_class: Type[T]) -> int:
        try:
            stmt = select(func.count()).select_from(model_class)
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count", {"model": model_class.__name__})
            raise

    def _execute_query(self, stmt: Any) -> List[Any]:
        """Execute a select statement and return the entities."""
        try:
            result = self._session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _commit(self) -> None:
        """
        Commit the current transaction.

        Raises:
            TransactionError: If commit fails (the session is rolled back)
        """
        try:
            self._session.commit()
        except SQLAlchemyError as e:
            self._session.rollback()
            raise TransactionError(
                repository_name=self._repository_name,
                phase="commit",
                original_error=str(e),
                cause=e,
            ) from e

    def _rollback(self) -> None:
        try:
            self._session.rollback()
        except SQLAlchemyError as e:
            self._logger.error(f"Rollback failed: {e}")
            raise TransactionError(
                repository_name=self._repository_name,
                phase="rollback",
                original_error=str(e),
                cause=e,
            ) from e
