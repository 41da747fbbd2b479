from deposit_pipeline.infrastructure.models.deposit import Deposit
from deposit_pipeline.infrastructure.models.execution_log import ExecutionLog
from deposit_pipeline.infrastructure.models.failed_transaction import FailedTransactionRecord

__all__ = [
    "Deposit",
    "FailedTransactionRecord",
    "ExecutionLog",
]
