from collections.abc import Iterator, Sequence
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from deposit_pipeline.infrastructure.database.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)
T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BaseRepository(Generic[ModelType]):
    def __init__(self, model: type[ModelType], db: Session):
        self.model = model
        self.db = db

    def count_by_execution(self, execution_id: UUID) -> int:
        return self.db.query(self.model).filter(self.model.execution_id == execution_id).count()

    def upsert_insert(self):
        """Dialect-specific INSERT construct that supports ON CONFLICT."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(self.model)
        if dialect == "sqlite":
            return sqlite_insert(self.model)
        raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect}")

    def bulk_insert(self, rows: Sequence[dict[str, Any]], chunk_size: int) -> int:
        inserted = 0
        for chunk in chunked(rows, chunk_size):
            result = self.db.execute(insert(self.model).values(list(chunk)))
            inserted += result.rowcount
        return inserted
