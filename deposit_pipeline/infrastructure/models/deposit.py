from decimal import Decimal
from uuid import UUID

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from deposit_pipeline.core.constants import DECIMAL_PLACES, MAX_DIGITS
from deposit_pipeline.infrastructure.database.base import GUID, BaseModel


class Deposit(BaseModel):
    __tablename__ = "deposits"

    # txid and address hold cipher tokens, never plaintext
    txid: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    address: Mapped[str] = mapped_column(String(512), nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=MAX_DIGITS, scale=DECIMAL_PLACES), nullable=False
    )
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    execution_id: Mapped[UUID] = mapped_column(GUID(), nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<Deposit(id={self.id}, amount={self.amount}, "
            f"confirmations={self.confirmations}, execution_id={self.execution_id})>"
        )
