from __future__ import annotations

from typing import Any, Optional, TypeVar

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.orm import sessionmaker

from database import Base, SessionLocal, session_scope
from errors import NotFound

ModelT = TypeVar("ModelT", bound=Base)


class LedgerStore:
    """
    Document-style access to the ledger tables.

    Every call runs in its own short session and commits on its own, so a
    sequence of calls is never atomic. Reads and writes are always scoped by
    the owning user id, which is a required positional argument. Returned
    objects are detached snapshots.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory or SessionLocal

    def create(self, model: type[ModelT], user_id: int, **fields: Any) -> ModelT:
        values = {key: value for key, value in fields.items() if value is not None}
        doc = model(user_id=user_id, **values)
        with session_scope(self.session_factory) as session:
            session.add(doc)
            session.flush()
            session.refresh(doc)
        return doc

    def get(self, model: type[ModelT], user_id: int, doc_id: int) -> Optional[ModelT]:
        with session_scope(self.session_factory) as session:
            doc = session.get(model, doc_id)
            if doc is None or doc.user_id != user_id:
                return None
            return doc

    def query(self, model: type[ModelT], user_id: int, **equals: Any) -> list[ModelT]:
        stmt = select(model).where(model.user_id == user_id)
        for name, value in equals.items():
            column = getattr(model, name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        stmt = stmt.order_by(model.id)
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt).all())

    def count(self, model: type[ModelT], user_id: int, **equals: Any) -> int:
        stmt = select(func.count(model.id)).where(model.user_id == user_id)
        for name, value in equals.items():
            column = getattr(model, name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        with session_scope(self.session_factory) as session:
            return int(session.execute(stmt).scalar_one() or 0)

    def update(
        self, model: type[ModelT], user_id: int, doc_id: int, **fields: Any
    ) -> None:
        """Write the given fields; a ``None`` value clears the field."""
        if not fields:
            return
        stmt = (
            update(model)
            .where(model.id == doc_id, model.user_id == user_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.session_factory) as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                raise NotFound(f"{model.__name__} {doc_id} not found")

    def increment(
        self, model: type[ModelT], user_id: int, doc_id: int, field: str, delta: int
    ) -> None:
        column = getattr(model, field)
        stmt = (
            update(model)
            .where(model.id == doc_id, model.user_id == user_id)
            .values({field: column + delta})
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.session_factory) as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                raise NotFound(f"{model.__name__} {doc_id} not found")

    def delete(self, model: type[ModelT], user_id: int, doc_id: int) -> bool:
        stmt = (
            delete(model)
            .where(model.id == doc_id, model.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.session_factory) as session:
            result = session.execute(stmt)
            return result.rowcount > 0

    def owners(self, model: type[ModelT]) -> list[int]:
        # Not user-scoped; enumerates owners for the reconciliation job.
        stmt = select(distinct(model.user_id)).order_by(model.user_id)
        with session_scope(self.session_factory) as session:
            return [int(row) for row in session.scalars(stmt).all()]
