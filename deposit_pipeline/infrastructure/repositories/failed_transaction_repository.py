from uuid import UUID

from sqlalchemy.orm import Session

from deposit_pipeline.infrastructure.models.failed_transaction import FailedTransactionRecord
from deposit_pipeline.infrastructure.repositories.base import BaseRepository


class FailedTransactionRepository(BaseRepository[FailedTransactionRecord]):
    def __init__(self, db: Session):
        super().__init__(FailedTransactionRecord, db)

    def count_by_reason(self, execution_id: UUID, reason: str) -> int:
        return (
            self.db.query(FailedTransactionRecord)
            .filter(
                FailedTransactionRecord.execution_id == execution_id,
                FailedTransactionRecord.reason == reason,
            )
            .count()
        )

    def get_by_execution(self, execution_id: UUID) -> list[FailedTransactionRecord]:
        return (
            self.db.query(FailedTransactionRecord)
            .filter(FailedTransactionRecord.execution_id == execution_id)
            .order_by(FailedTransactionRecord.created_at)
            .all()
        )
