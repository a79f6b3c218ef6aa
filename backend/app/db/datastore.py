"""Row-oriented access to the referral tables.

Each call runs in its own short transaction unless it happens inside
``transaction()``, in which case it joins that unit of work and nothing is
committed until the block exits cleanly. Integrity violations surface as
``DuplicateRowError`` so callers can tell a lost race apart from a broken
database; every other SQLAlchemy failure becomes an opaque ``StorageError``.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
import threading
from typing import Any, TypeVar

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import DuplicateRowError, StorageError
from app.core.logging_config import get_logger
from app.db.base import Base

ModelT = TypeVar("ModelT", bound=Base)

logger = get_logger(__name__)


def _where(model: type[Base], conditions: tuple[ColumnElement[bool], ...], filters: dict[str, Any]):
    clauses = list(conditions)
    for name, value in filters.items():
        clauses.append(getattr(model, name) == value)
    return clauses


@contextmanager
def _translate_errors(operation: str, table: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        logger.info("datastore_integrity_violation", operation=operation, table=table)
        raise DuplicateRowError(f"Duplicate {table} row") from exc
    except SQLAlchemyError as exc:
        logger.error("datastore_failure", operation=operation, table=table, error=str(exc))
        raise StorageError(f"Failed to {operation} {table}") from exc


class SqlAlchemyDatastore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator["SqlAlchemyDatastore"]:
        """Run every datastore call in the block on one session and commit once.

        Any exception leaving the block rolls back all of its writes. Nested
        ``transaction()`` blocks join the outermost one.
        """
        if getattr(self._local, "session", None) is not None:
            yield self
            return
        db = self._session_factory()
        self._local.session = db
        try:
            with _translate_errors("commit", "transaction"):
                yield self
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            self._local.session = None
            db.close()

    @contextmanager
    def _session(self, operation: str, model: type[Base]) -> Iterator[Session]:
        active = getattr(self._local, "session", None)
        if active is not None:
            with _translate_errors(operation, model.__tablename__):
                yield active
            return
        db = self._session_factory()
        try:
            with _translate_errors(operation, model.__tablename__):
                yield db
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def find(self, model: type[ModelT], *conditions: ColumnElement[bool], **filters: Any) -> ModelT | None:
        with self._session("read", model) as db:
            return db.scalar(select(model).where(*_where(model, conditions, filters)).limit(1))

    def find_all(
        self,
        model: type[ModelT],
        *conditions: ColumnElement[bool],
        order_by: ColumnElement[Any] | None = None,
        **filters: Any,
    ) -> list[ModelT]:
        stmt = select(model).where(*_where(model, conditions, filters))
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        with self._session("read", model) as db:
            return list(db.scalars(stmt).all())

    def count(self, model: type[Base], *conditions: ColumnElement[bool], **filters: Any) -> int:
        stmt = select(func.count()).select_from(model).where(*_where(model, conditions, filters))
        with self._session("count", model) as db:
            return int(db.scalar(stmt) or 0)

    def insert(self, model: type[ModelT], **values: Any) -> ModelT:
        row = model(**values)
        with self._session("insert", model) as db:
            db.add(row)
            db.flush()
            db.refresh(row)
        return row

    def update(
        self,
        model: type[ModelT],
        patch: dict[str, Any],
        *conditions: ColumnElement[bool],
        **filters: Any,
    ) -> list[ModelT]:
        """Apply ``patch`` to every matching row and return the updated rows.

        Rows are locked for the duration of the transaction where the backend
        supports it, so two callers racing on the same conditional update
        cannot both match.
        """
        stmt = select(model).where(*_where(model, conditions, filters)).with_for_update()
        with self._session("update", model) as db:
            rows = list(db.scalars(stmt).all())
            for row in rows:
                for name, value in patch.items():
                    setattr(row, name, value)
                db.add(row)
            db.flush()
        return rows
