from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from deposit_pipeline.core.enums import FailureReason


class TransactionBatch(BaseModel):
    # records stay raw until the consumer validates them one by one
    transactions: list[Any]


@dataclass(frozen=True)
class ValidDeposit:
    txid: str
    address: str
    amount: Decimal
    confirmations: int
    execution_id: UUID


@dataclass(frozen=True)
class FailedTransaction:
    execution_id: UUID
    reason: str
    txid: str | None = None
    address: str | None = None
    amount: Decimal | None = None
    confirmations: int | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.reason == FailureReason.DUPLICATE.value


ClassifiedTransaction = ValidDeposit | FailedTransaction
