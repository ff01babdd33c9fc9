"""Generic base repository for SQLAlchemy models."""

from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session


class BaseRepository[T]:
    """Thin typed wrapper over a Session for one model.

    Repositories never commit; the job store and the retention service own
    transaction boundaries.
    """

    model: type[T]

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, id_: Any) -> T | None:
        """Row by primary key, or None."""
        return self.db.get(self.model, id_)

    def newest(self) -> T | None:
        """Most recently created row."""
        stmt = select(self.model).order_by(self.model.created_at.desc()).limit(1)
        return self.db.scalar(stmt)

    def add(self, obj: T) -> T:
        """Add a row and flush so server defaults and keys are populated."""
        self.db.add(obj)
        self.db.flush()
        return obj

    def add_all(self, objs: Iterable[T]) -> None:
        self.db.add_all(objs)

    def delete_where(self, *criteria: Any) -> int:
        """Bulk delete matching rows. Returns the number deleted."""
        result = self.db.execute(delete(self.model).where(*criteria))
        return result.rowcount or 0
