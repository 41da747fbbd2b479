import time
from collections.abc import Sequence
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.core.metrics import batch_flush_duration_seconds, deposits_inserted_total
from deposit_pipeline.domain.exceptions import PersistenceError
from deposit_pipeline.infrastructure.database.base import utcnow
from deposit_pipeline.infrastructure.database.session import session_scope
from deposit_pipeline.infrastructure.external.encryption import FieldCipher
from deposit_pipeline.infrastructure.repositories.deposit_repository import DepositRepository
from deposit_pipeline.infrastructure.repositories.failed_transaction_repository import (
    FailedTransactionRepository,
)
from deposit_pipeline.schemas.transaction import FailedTransaction, ValidDeposit

logger = get_logger(__name__)


class BatchPersistenceGateway:
    """Transactional, idempotent bulk writer for classified transactions.

    ``txid`` and ``address`` are obscured before every write and revealed
    after every read. Valid deposits are inserted with ON CONFLICT (txid)
    DO NOTHING, which is what makes redelivered messages harmless. Failed
    rows are an append-only audit log and are never deduplicated.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cipher: FieldCipher,
        chunk_size: int = 500,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.chunk_size = chunk_size

    def persist(
        self,
        valid_deposits: Sequence[ValidDeposit],
        failed_transactions: Sequence[FailedTransaction],
    ) -> int:
        if not valid_deposits and not failed_transactions:
            return 0

        deposit_rows = [self._deposit_row(deposit) for deposit in valid_deposits]
        failed_rows = [self._failed_row(failed) for failed in failed_transactions]

        started = time.perf_counter()
        try:
            with session_scope(self.session_factory) as db:
                inserted = DepositRepository(db).insert_ignoring_conflicts(
                    deposit_rows, self.chunk_size
                )
                FailedTransactionRepository(db).bulk_insert(failed_rows, self.chunk_size)
        except SQLAlchemyError as e:
            logger.error(
                "batch_persist_failed",
                valid=len(deposit_rows),
                failed=len(failed_rows),
                error=str(e),
            )
            raise PersistenceError(f"Batch persistence failed: {e}") from e
        finally:
            batch_flush_duration_seconds.observe(time.perf_counter() - started)

        deposits_inserted_total.inc(inserted)
        skipped = len(deposit_rows) - inserted
        logger.info(
            "batch_persisted",
            deposits_inserted=inserted,
            deposits_skipped=skipped,
            failed_recorded=len(failed_rows),
        )
        return inserted

    def find_existing_txids(self, txids: Sequence[str]) -> set[str]:
        if not txids:
            return set()

        tokens = {self.cipher.obscure(txid): txid for txid in txids}
        try:
            with session_scope(self.session_factory) as db:
                found = DepositRepository(db).existing_txids(list(tokens))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Existing txid lookup failed: {e}") from e

        return {tokens[token] for token in found}

    def list_deposits(self, execution_id: UUID, min_confirmations: int = 0) -> list[ValidDeposit]:
        try:
            with session_scope(self.session_factory) as db:
                rows = DepositRepository(db).get_by_execution(execution_id, min_confirmations)
                return [
                    ValidDeposit(
                        txid=self.cipher.reveal(row.txid),
                        address=self.cipher.reveal(row.address),
                        amount=row.amount,
                        confirmations=row.confirmations,
                        execution_id=row.execution_id,
                    )
                    for row in rows
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Deposit listing failed: {e}") from e

    def list_failed(self, execution_id: UUID) -> list[FailedTransaction]:
        try:
            with session_scope(self.session_factory) as db:
                rows = FailedTransactionRepository(db).get_by_execution(execution_id)
                return [
                    FailedTransaction(
                        execution_id=row.execution_id,
                        reason=row.reason,
                        txid=self.cipher.reveal_optional(row.txid),
                        address=self.cipher.reveal_optional(row.address),
                        amount=row.amount,
                        confirmations=row.confirmations,
                    )
                    for row in rows
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed transaction listing failed: {e}") from e

    def count_failed(self, execution_id: UUID, reason: str | None = None) -> int:
        try:
            with session_scope(self.session_factory) as db:
                repo = FailedTransactionRepository(db)
                if reason is None:
                    return repo.count_by_execution(execution_id)
                return repo.count_by_reason(execution_id, reason)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed transaction count failed: {e}") from e

    def _deposit_row(self, deposit: ValidDeposit) -> dict:
        return {
            "id": uuid4(),
            "created_at": utcnow(),
            "txid": self.cipher.obscure(deposit.txid),
            "address": self.cipher.obscure(deposit.address),
            "amount": deposit.amount,
            "confirmations": deposit.confirmations,
            "execution_id": deposit.execution_id,
        }

    def _failed_row(self, failed: FailedTransaction) -> dict:
        return {
            "id": uuid4(),
            "created_at": utcnow(),
            "execution_id": failed.execution_id,
            "txid": self.cipher.obscure_optional(failed.txid),
            "address": self.cipher.obscure_optional(failed.address),
            "amount": failed.amount,
            "confirmations": failed.confirmations,
            "reason": failed.reason,
        }
