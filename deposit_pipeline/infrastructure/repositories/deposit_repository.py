from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from deposit_pipeline.infrastructure.models.deposit import Deposit
from deposit_pipeline.infrastructure.repositories.base import BaseRepository, chunked

# keeps IN (...) lists well below driver parameter limits
LOOKUP_CHUNK_SIZE = 500


class DepositRepository(BaseRepository[Deposit]):
    def __init__(self, db: Session):
        super().__init__(Deposit, db)

    def insert_ignoring_conflicts(self, rows: Sequence[dict[str, Any]], chunk_size: int) -> int:
        inserted = 0
        for chunk in chunked(rows, chunk_size):
            stmt = (
                self.upsert_insert()
                .values(list(chunk))
                .on_conflict_do_nothing(index_elements=[Deposit.txid])
            )
            result = self.db.execute(stmt)
            inserted += max(result.rowcount, 0)
        return inserted

    def existing_txids(self, txids: Sequence[str]) -> set[str]:
        found: set[str] = set()
        for chunk in chunked(txids, LOOKUP_CHUNK_SIZE):
            rows = self.db.query(Deposit.txid).filter(Deposit.txid.in_(chunk)).all()
            found.update(row.txid for row in rows)
        return found

    def get_by_execution(self, execution_id: UUID, min_confirmations: int = 0) -> list[Deposit]:
        return (
            self.db.query(Deposit)
            .filter(
                Deposit.execution_id == execution_id,
                Deposit.confirmations >= min_confirmations,
            )
            .order_by(Deposit.created_at)
            .all()
        )
