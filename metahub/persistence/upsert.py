"""Dialect-aware INSERT .. ON CONFLICT for PostgreSQL and SQLite."""
from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"upsert is not supported on dialect {dialect!r}")


def insert_ignore(db: Session, model, values: dict[str, Any], conflict_columns: Sequence[str]) -> bool:
    """Insert a row unless it collides on ``conflict_columns``. True when inserted."""
    stmt = _insert_for(db)(model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = db.execute(stmt)
    return result.rowcount == 1


def upsert(
    db: Session,
    model,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
    update: Callable[[Any], dict[str, Any]],
) -> None:
    """Insert or update in one statement.

    ``update`` receives the ``excluded`` namespace and returns the SET clause,
    so accumulating updates can be written as ``col + excluded.col``.
    """
    stmt = _insert_for(db)(model).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=update(stmt.excluded))
    db.execute(stmt)
