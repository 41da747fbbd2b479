from collections.abc import Callable, Iterable, Mapping
from typing import Any
from uuid import UUID

from deposit_pipeline.core.enums import FailureReason
from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.core.metrics import transactions_classified_total
from deposit_pipeline.domain.classifier import (
    Valid,
    check_duplicate,
    classify,
    fits_amount,
    fits_confirmations,
    fits_identifier,
    to_amount,
    validate,
)
from deposit_pipeline.domain.dedup import DeduplicationTracker
from deposit_pipeline.domain.exceptions import TransactionValidationError
from deposit_pipeline.schemas.transaction import (
    ClassifiedTransaction,
    FailedTransaction,
    ValidDeposit,
)

logger = get_logger(__name__)


class ClassificationService:
    def __init__(
        self,
        tracker: DeduplicationTracker,
        min_confirmations: int,
        existing_txids_lookup: Callable[[list[str]], set[str]],
    ):
        self.tracker = tracker
        self.min_confirmations = min_confirmations
        self.existing_txids_lookup = existing_txids_lookup

    def reconcile(self, records: Iterable[Any]) -> set[str]:
        txids = [
            record["txid"]
            for record in records
            if isinstance(record, Mapping) and isinstance(record.get("txid"), str)
        ]
        if not txids:
            return set()
        return self.tracker.reconcile(txids, self.existing_txids_lookup)

    def classify(self, record: Any, execution_id: UUID) -> ClassifiedTransaction:
        try:
            validate(record)
        except TransactionValidationError as e:
            logger.warning("transaction_malformed", error=e.message)
            return self._failed(record, execution_id, e.message)

        txid = record["txid"]

        with self.tracker.lock:
            if check_duplicate(txid, self.tracker):
                return self._failed(record, execution_id, FailureReason.DUPLICATE.value)

            outcome = classify(record, self.min_confirmations)
            if isinstance(outcome, Valid):
                self.tracker.add(txid)

        if isinstance(outcome, Valid):
            transactions_classified_total.labels(result="valid", reason="").inc()
            return ValidDeposit(
                txid=txid,
                address=record["address"],
                amount=to_amount(record["amount"]),
                confirmations=int(record["confirmations"]),
                execution_id=execution_id,
            )

        return self._failed(record, execution_id, outcome.reason)

    def _failed(self, record: Any, execution_id: UUID, reason: str) -> FailedTransaction:
        known_reasons = {member.value for member in FailureReason}
        label = reason if reason in known_reasons else "malformed"
        transactions_classified_total.labels(result="failed", reason=label).inc()

        # only values the failed_transactions columns can hold are kept
        fields = record if isinstance(record, Mapping) else {}
        txid = fields.get("txid")
        address = fields.get("address")
        amount = fields.get("amount")
        confirmations = fields.get("confirmations")

        return FailedTransaction(
            execution_id=execution_id,
            reason=reason,
            txid=txid if fits_identifier(txid) else None,
            address=address if fits_identifier(address) else None,
            amount=to_amount(amount) if fits_amount(amount) else None,
            confirmations=int(confirmations) if fits_confirmations(confirmations) else None,
        )
