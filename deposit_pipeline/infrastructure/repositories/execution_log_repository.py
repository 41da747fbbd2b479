from uuid import UUID

from sqlalchemy.orm import Session

from deposit_pipeline.infrastructure.models.execution_log import ExecutionLog
from deposit_pipeline.infrastructure.repositories.base import BaseRepository


class ExecutionLogRepository(BaseRepository[ExecutionLog]):
    def __init__(self, db: Session):
        super().__init__(ExecutionLog, db)

    def add(self, execution_id: UUID, log_level: str, message: str) -> ExecutionLog:
        entry = ExecutionLog(execution_id=execution_id, log_level=log_level, message=message)
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_by_execution(self, execution_id: UUID) -> list[ExecutionLog]:
        return (
            self.db.query(ExecutionLog)
            .filter(ExecutionLog.execution_id == execution_id)
            .order_by(ExecutionLog.created_at)
            .all()
        )
