from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import UUID

from kombu import Producer

from deposit_pipeline.core.constants import PERSISTENT_DELIVERY_MODE
from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.core.metrics import messages_published_total, source_files_total
from deposit_pipeline.domain.exceptions import FileProcessingError
from deposit_pipeline.infrastructure.external.file_reader import read_transaction_batch
from deposit_pipeline.infrastructure.messaging.topology import Topology
from deposit_pipeline.schemas.envelope import ControlEnvelope, WorkEnvelope
from deposit_pipeline.schemas.transaction import TransactionBatch

logger = get_logger(__name__)

PUBLISH_RETRY_POLICY = {
    "max_retries": 3,
    "interval_start": 0.5,
    "interval_step": 1.0,
    "interval_max": 3.0,
}


@dataclass
class PublishSummary:
    published: int = 0
    files_processed: int = 0
    files_skipped: list[str] = field(default_factory=list)


class TransactionPublisher:
    """Publishes one persistent envelope per transaction record, then a single
    control envelope marking the end of the run's stream.

    Everything goes to the main exchange under the main routing key, so the
    broker's per-queue FIFO keeps the control envelope behind every work item.
    """

    def __init__(
        self,
        channel,
        topology: Topology,
        data_dir: Path | str,
        reader: Callable[[str, Path | str], TransactionBatch] = read_transaction_batch,
    ):
        self.topology = topology
        self.data_dir = data_dir
        self.reader = reader
        self.producer = Producer(
            channel,
            exchange=topology.main_exchange,
            routing_key=topology.main_routing_key,
            serializer="json",
        )

    def publish_files(self, file_names: Iterable[str], execution_id: UUID) -> PublishSummary:
        summary = PublishSummary()

        for name in file_names:
            try:
                batch = self.reader(name, self.data_dir)
            except FileProcessingError as e:
                source_files_total.labels(status="skipped").inc()
                summary.files_skipped.append(name)
                logger.error("transaction_file_skipped", file=name, error=e.message)
                continue

            for record in batch.transactions:
                self.publish_transaction(record, execution_id)
                summary.published += 1

            source_files_total.labels(status="processed").inc()
            summary.files_processed += 1
            logger.info("transaction_file_published", file=name, records=len(batch.transactions))

        self.publish_control(execution_id)
        logger.info(
            "publication_completed",
            published=summary.published,
            files_processed=summary.files_processed,
            files_skipped=len(summary.files_skipped),
        )
        return summary

    def publish_transaction(self, record: Any, execution_id: UUID) -> None:
        self._publish(WorkEnvelope(tx=record, execution_id=execution_id).to_wire())
        messages_published_total.labels(kind="work").inc()

    def publish_control(self, execution_id: UUID) -> None:
        self._publish(ControlEnvelope(execution_id=execution_id).to_wire())
        messages_published_total.labels(kind="control").inc()
        logger.info("control_message_published")

    def _publish(self, payload: dict) -> None:
        self.producer.publish(
            payload,
            delivery_mode=PERSISTENT_DELIVERY_MODE,
            retry=True,
            retry_policy=PUBLISH_RETRY_POLICY,
        )
