from decimal import Decimal
from uuid import UUID

from sqlalchemy import Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from deposit_pipeline.core.constants import DECIMAL_PLACES, MAX_DIGITS
from deposit_pipeline.infrastructure.database.base import GUID, BaseModel


class FailedTransactionRecord(BaseModel):
    __tablename__ = "failed_transactions"

    # Append-only audit log: no uniqueness on txid, a record may fail more than once
    execution_id: Mapped[UUID] = mapped_column(GUID(), nullable=False, index=True)
    txid: Mapped[str | None] = mapped_column(String(512), nullable=True)
    address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(
        Numeric(precision=MAX_DIGITS, scale=DECIMAL_PLACES), nullable=True
    )
    confirmations: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<FailedTransactionRecord(id={self.id}, reason={self.reason!r})>"
