from uuid import UUID

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from deposit_pipeline.infrastructure.database.base import GUID, BaseModel


class ExecutionLog(BaseModel):
    __tablename__ = "execution_logs"

    execution_id: Mapped[UUID] = mapped_column(GUID(), nullable=False, index=True)
    log_level: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<ExecutionLog(execution_id={self.execution_id}, level={self.log_level})>"
