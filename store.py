"""Record-store helpers over a SQLAlchemy session.

Every helper flushes but never commits; the caller's ``db_session()`` owns the
transaction, so a failed step rolls back everything written before it.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import PersistenceError
from models import Base

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


@contextmanager
def _store_errors(action: str, model: type[Base]) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Record store %s on %s failed", action, model.__tablename__)
        raise PersistenceError(f"Could not {action} {model.__tablename__}: {exc.__class__.__name__}") from exc


def find(
    db: Session,
    model: type[ModelT],
    *,
    order_by: Any = None,
    limit: int | None = None,
    for_update: bool = False,
    **filters: Any,
) -> list[ModelT]:
    stmt = select(model).filter_by(**filters)
    if order_by is not None:
        columns = order_by if isinstance(order_by, (list, tuple)) else [order_by]
        stmt = stmt.order_by(*columns)
    if limit:
        stmt = stmt.limit(limit)
    if for_update:
        stmt = stmt.with_for_update()
    with _store_errors("read", model):
        return list(db.scalars(stmt).all())


def insert(db: Session, record: ModelT) -> ModelT:
    with _store_errors("insert into", type(record)):
        db.add(record)
        db.flush()
    return record


def upsert(
    db: Session,
    model: type[ModelT],
    rows: Sequence[dict[str, Any]],
    conflict_keys: Sequence[str],
) -> list[ModelT]:
    saved: list[ModelT] = []
    with _store_errors("upsert into", model):
        for row in rows:
            key = {name: row[name] for name in conflict_keys}
            existing = db.scalar(select(model).filter_by(**key))
            if existing is None:
                existing = model(**row)
                db.add(existing)
            else:
                for name, value in row.items():
                    setattr(existing, name, value)
            saved.append(existing)
        db.flush()
    return saved


def update(db: Session, model: type[ModelT], patch: dict[str, Any], **filters: Any) -> list[ModelT]:
    rows = find(db, model, **filters)
    with _store_errors("update", model):
        for row in rows:
            for name, value in patch.items():
                setattr(row, name, value)
        db.flush()
    return rows


def delete(db: Session, model: type[ModelT], **filters: Any) -> int:
    rows = find(db, model, **filters)
    with _store_errors("delete from", model):
        for row in rows:
            db.delete(row)
        db.flush()
    return len(rows)
