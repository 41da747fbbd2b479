import socket
import time
from dataclasses import dataclass
from threading import Event
from uuid import UUID

from kombu import Connection, Consumer, Producer
from kombu.message import Message

from deposit_pipeline.core.enums import ConsumerState, MessageOutcome
from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.core.metrics import (
    messages_consumed_total,
    pending_entries_quarantined_total,
)
from deposit_pipeline.domain.exceptions import PersistenceError
from deposit_pipeline.domain.services.classification_service import ClassificationService
from deposit_pipeline.domain.services.persistence_gateway import BatchPersistenceGateway
from deposit_pipeline.infrastructure.messaging.queue_monitor import queues_empty
from deposit_pipeline.infrastructure.messaging.topology import Topology
from deposit_pipeline.schemas.envelope import ControlEnvelope, WorkEnvelope, parse_envelope
from deposit_pipeline.schemas.transaction import (
    ClassifiedTransaction,
    FailedTransaction,
    ValidDeposit,
)
from deposit_pipeline.workers.retry_policy import RetryPolicy

logger = get_logger(__name__)


@dataclass
class RunSummary:
    execution_id: UUID
    valid: int = 0
    failed: int = 0
    duplicates: int = 0
    retried: int = 0
    dead_lettered: int = 0
    stale_controls: int = 0
    quarantined: int = 0
    drain_timed_out: bool = False
    state: ConsumerState = ConsumerState.RUNNING


class PendingBatch:
    """Classified transactions waiting to be persisted. Owned by one consumer."""

    def __init__(self, size_threshold: int):
        self.size_threshold = size_threshold
        self.valid: list[ValidDeposit] = []
        self.failed: list[FailedTransaction] = []

    def __len__(self) -> int:
        return len(self.valid) + len(self.failed)

    def is_full(self) -> bool:
        return len(self) >= self.size_threshold

    def entries(self) -> list[ClassifiedTransaction]:
        return [*self.valid, *self.failed]

    def add(self, item: ClassifiedTransaction) -> None:
        if isinstance(item, ValidDeposit):
            self.valid.append(item)
        else:
            self.failed.append(item)

    def remove(self, item: ClassifiedTransaction) -> None:
        items = self.valid if isinstance(item, ValidDeposit) else self.failed
        # newest first, by identity: equal failed rows are legitimate duplicates
        for index in range(len(items) - 1, -1, -1):
            if items[index] is item:
                del items[index]
                return

    def clear(self) -> None:
        self.valid = []
        self.failed = []


class TransactionConsumer:
    """Consumes envelopes from the main queue until the run's control
    envelope has been seen and the main and retry queues are drained.

    States go RUNNING -> DRAINING -> DONE. Dispatch happens on the calling
    thread through ``Connection.drain_events``; ``prefetch_count`` bounds how
    many unacknowledged deliveries the broker hands over at once.
    """

    def __init__(
        self,
        connection: Connection,
        topology: Topology,
        gateway: BatchPersistenceGateway,
        classifier: ClassificationService,
        execution_id: UUID,
        batch_size: int = 50,
        prefetch_count: int = 1,
        max_retries: int = 3,
        drain_poll_interval: float = 1.0,
        drain_max_wait: float = 60.0,
    ):
        self.connection = connection
        self.topology = topology
        self.gateway = gateway
        self.classifier = classifier
        self.execution_id = execution_id
        self.prefetch_count = prefetch_count
        self.max_retries = max_retries
        self.drain_poll_interval = drain_poll_interval
        self.drain_max_wait = drain_max_wait

        self.state = ConsumerState.RUNNING
        self.batch = PendingBatch(batch_size)
        self.summary = RunSummary(execution_id=execution_id)
        self.completed = Event()
        self._stop_requested = Event()
        self._drain_deadline: float | None = None
        self._retry_policy: RetryPolicy | None = None

    def request_stop(self) -> None:
        self._stop_requested.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self.completed.wait(timeout)

    def run(self) -> RunSummary:
        channel = self.connection.channel()
        self._retry_policy = RetryPolicy(Producer(channel), self.topology, self.max_retries)
        consumer = Consumer(
            channel,
            queues=[self.topology.main_queue],
            on_message=self._on_message,
            prefetch_count=self.prefetch_count,
        )

        logger.info(
            "consumer_started",
            queue=self.topology.main_queue.name,
            prefetch_count=self.prefetch_count,
            batch_size=self.batch.size_threshold,
        )

        try:
            with consumer:
                self._consume(channel)
        except BaseException:
            self._flush_on_shutdown()
            raise
        else:
            if self.state is not ConsumerState.DONE:
                logger.warning("consumer_stopped_before_done", state=self.state.value)
                self.flush()
        finally:
            channel.close()

        self.summary.state = self.state
        logger.info(
            "consumer_finished",
            state=self.state.value,
            valid=self.summary.valid,
            failed=self.summary.failed,
            duplicates=self.summary.duplicates,
            retried=self.summary.retried,
            dead_lettered=self.summary.dead_lettered,
            quarantined=self.summary.quarantined,
        )
        return self.summary

    def flush(self, current: ClassifiedTransaction | None = None) -> int:
        """Persist the pending batch in one transaction.

        When storage rejects the batch, entries are written one at a time and
        the ones still refused are quarantined, so a single unstorable entry
        cannot block every later flush. ``current`` belongs to the message
        being handled, which is not acknowledged yet; it is never quarantined
        and its error is raised instead. If storage refuses every entry the
        batch is kept as it is and the error raised.
        """
        if not len(self.batch):
            return 0
        try:
            inserted = self.gateway.persist(self.batch.valid, self.batch.failed)
        except PersistenceError as e:
            if len(self.batch) == 1:
                raise
            logger.warning(
                "batch_flush_failed_isolating_entries", pending=len(self.batch), error=e.message
            )
            return self._flush_entries(current)
        self.batch.clear()
        return inserted

    def _flush_entries(self, current: ClassifiedTransaction | None) -> int:
        entries = self.batch.entries()
        inserted = 0
        refused: list[tuple[ClassifiedTransaction, PersistenceError]] = []
        for entry in entries:
            try:
                inserted += self._persist_entry(entry)
            except PersistenceError as e:
                refused.append((entry, e))
            else:
                self.batch.remove(entry)

        if len(refused) == len(entries):
            # storage itself is failing, keep everything for a later flush
            raise refused[0][1]

        current_error = None
        for entry, error in refused:
            if entry is current:
                current_error = error
            else:
                self._quarantine(entry, error)
        if current_error is not None:
            raise current_error
        return inserted

    def _persist_entry(self, entry: ClassifiedTransaction) -> int:
        if isinstance(entry, ValidDeposit):
            return self.gateway.persist([entry], [])
        return self.gateway.persist([], [entry])

    def _quarantine(self, entry: ClassifiedTransaction, error: PersistenceError) -> None:
        self.batch.remove(entry)
        self.summary.quarantined += 1
        pending_entries_quarantined_total.inc()
        logger.error(
            "pending_entry_quarantined",
            valid=isinstance(entry, ValidDeposit),
            error=error.message,
        )

    def _consume(self, channel) -> None:
        while not self.completed.is_set():
            if self._stop_requested.is_set():
                logger.info("consumer_stop_requested", state=self.state.value)
                return

            try:
                self.connection.drain_events(timeout=self.drain_poll_interval)
                idle = False
            except socket.timeout:
                idle = True

            if self.state is ConsumerState.DRAINING:
                self._drain_step(channel, idle)

    def _drain_step(self, channel, idle: bool) -> None:
        # Full batches are flushed as messages arrive. The remainder waits for
        # a tick without deliveries, and only then are queue depths trusted,
        # since prefetched messages may still sit in the client buffer.
        if idle:
            self.flush()
            if queues_empty(channel, [self.topology.main_queue, self.topology.retry_queue]):
                logger.info("queues_drained")
                self._finish(timed_out=False)
                return

        if time.monotonic() >= self._drain_deadline:
            self.flush()
            logger.warning(
                "drain_wait_exceeded",
                max_wait_seconds=self.drain_max_wait,
                queues=[self.topology.main_queue.name, self.topology.retry_queue.name],
            )
            self._finish(timed_out=True)

    def _finish(self, timed_out: bool) -> None:
        self.summary.drain_timed_out = timed_out
        self.state = ConsumerState.DONE
        self.completed.set()

    def _on_message(self, message: Message) -> None:
        try:
            envelope = parse_envelope(message.body)
            if isinstance(envelope, ControlEnvelope):
                outcome = self._handle_control(envelope)
            else:
                outcome = self._handle_work(envelope)
        except Exception as exc:
            outcome = self._retry_policy.handle_failure(message, exc)
            if outcome is MessageOutcome.RETRIED:
                self.summary.retried += 1
            else:
                self.summary.dead_lettered += 1
            messages_consumed_total.labels(outcome=outcome.value).inc()
            return

        message.ack()
        messages_consumed_total.labels(outcome=outcome.value).inc()

    def _handle_control(self, envelope: ControlEnvelope) -> MessageOutcome:
        if envelope.execution_id != self.execution_id:
            self.summary.stale_controls += 1
            logger.warning(
                "stale_control_message_ignored", other_execution=str(envelope.execution_id)
            )
            return MessageOutcome.CONTROL

        if self.state is ConsumerState.RUNNING:
            self.state = ConsumerState.DRAINING
            self._drain_deadline = time.monotonic() + self.drain_max_wait
            logger.info("control_message_received", pending=len(self.batch))
        return MessageOutcome.CONTROL

    def _handle_work(self, envelope: WorkEnvelope) -> MessageOutcome:
        self.classifier.reconcile([envelope.tx])
        result = self.classifier.classify(envelope.tx, envelope.execution_id)
        self.batch.add(result)

        if self.batch.is_full():
            try:
                self.flush(current=result)
            except PersistenceError:
                # this message is retried on its own and must classify afresh
                self.batch.remove(result)
                if isinstance(result, ValidDeposit):
                    self.classifier.tracker.release(result.txid)
                raise

        if isinstance(result, ValidDeposit):
            self.summary.valid += 1
            return MessageOutcome.VALID
        if result.is_duplicate:
            self.summary.duplicates += 1
            return MessageOutcome.DUPLICATE
        self.summary.failed += 1
        return MessageOutcome.FAILED

    def _flush_on_shutdown(self) -> None:
        if not len(self.batch):
            return
        try:
            self.flush()
            logger.info("pending_batch_flushed_on_shutdown")
        except PersistenceError as e:
            logger.error(
                "pending_batch_lost_on_shutdown", pending=len(self.batch), error=e.message
            )
