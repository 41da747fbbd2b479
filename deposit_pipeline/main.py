import argparse
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from prometheus_client import start_http_server

from deposit_pipeline.config import Settings, get_settings
from deposit_pipeline.core.enums import ConsumerState
from deposit_pipeline.core.logging import (
    bind_execution,
    clear_execution,
    configure_logging,
    get_logger,
)
from deposit_pipeline.domain.dedup import DeduplicationTracker
from deposit_pipeline.domain.exceptions import DomainException, PersistenceError
from deposit_pipeline.domain.services.classification_service import ClassificationService
from deposit_pipeline.domain.services.execution_log_service import ExecutionAuditLog
from deposit_pipeline.domain.services.persistence_gateway import BatchPersistenceGateway
from deposit_pipeline.domain.services.report_service import DepositReportService
from deposit_pipeline.infrastructure.database.base import Base
from deposit_pipeline.infrastructure.database.session import (
    create_db_engine,
    create_session_factory,
    wait_for_database,
)
from deposit_pipeline.infrastructure.external.encryption import FieldCipher
from deposit_pipeline.infrastructure.messaging.connection import connect_broker
from deposit_pipeline.infrastructure.messaging.topology import (
    declare_topology,
    topology_from_settings,
)
from deposit_pipeline.workers.consumer import TransactionConsumer
from deposit_pipeline.workers.dead_letters import dead_letter_count, replay_dead_letters
from deposit_pipeline.workers.publisher import TransactionPublisher

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deposit-pipeline",
        description="Publish transaction files through the broker, persist deposits, report",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    run = subcommands.add_parser("run", help="Run one publish/consume/report execution")
    run.add_argument("--data-dir", type=Path, default=None, help="Directory of the input files")
    run.add_argument("--files", nargs="+", default=None, help="Input file names, in order")
    run.add_argument("--min-confirmations", type=int, default=None)
    run.add_argument("--prefetch", type=int, default=None, help="Consumer prefetch count")
    run.add_argument("--metrics-port", type=int, default=None)
    run.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables before running (use alembic in production)",
    )

    dlq = subcommands.add_parser("dlq", help="Inspect or replay the dead-letter queue")
    dlq.add_argument(
        "--replay", action="store_true", help="Move dead letters back to the main queue"
    )
    dlq.add_argument("--limit", type=int, default=None, help="Replay at most this many messages")

    return parser


@contextmanager
def stop_on_signals(consumer: TransactionConsumer) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``consumer.request_stop`` while the block runs."""

    def _handler(signum, frame):
        logger.warning("shutdown_signal_received", signal=signal.Signals(signum).name)
        consumer.request_stop()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_pipeline(args: argparse.Namespace, settings: Settings) -> int:
    execution_id = uuid4()
    bind_execution(str(execution_id))

    data_dir = args.data_dir or settings.data_dir
    files = args.files or settings.source_files
    min_confirmations = (
        args.min_confirmations if args.min_confirmations is not None else settings.min_confirmations
    )
    prefetch = args.prefetch if args.prefetch is not None else settings.consumer_prefetch_count
    metrics_port = args.metrics_port if args.metrics_port is not None else settings.metrics_port

    if metrics_port:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)

    engine = create_db_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=settings.debug,
    )
    connection = None
    audit: ExecutionAuditLog | None = None

    try:
        wait_for_database(
            engine,
            max_retries=settings.db_connect_max_retries,
            interval_seconds=settings.db_connect_interval_seconds,
        )
        if args.create_schema:
            Base.metadata.create_all(engine)
            logger.info("schema_created")

        session_factory = create_session_factory(engine)
        audit = ExecutionAuditLog(session_factory, execution_id)

        connection = connect_broker(
            settings.broker_url,
            max_retries=settings.broker_connect_max_retries,
            interval_start=settings.broker_connect_interval_start,
            interval_step=settings.broker_connect_interval_step,
            interval_max=settings.broker_connect_interval_max,
        )
        audit.info("execution started")

        topology = topology_from_settings(settings)
        with connection.channel() as channel:
            declare_topology(channel, topology)
            published = TransactionPublisher(channel, topology, data_dir).publish_files(
                files, execution_id
            )
        for name in published.files_skipped:
            audit.warning(f"transaction file skipped: {name}")
        audit.info(
            f"published {published.published} transactions from "
            f"{published.files_processed} file(s)"
        )

        gateway = BatchPersistenceGateway(
            session_factory,
            FieldCipher(settings.encryption_key),
            chunk_size=settings.persist_chunk_size,
        )
        classifier = ClassificationService(
            DeduplicationTracker(), min_confirmations, gateway.find_existing_txids
        )
        consumer = TransactionConsumer(
            connection,
            topology,
            gateway,
            classifier,
            execution_id,
            batch_size=settings.consumer_batch_size,
            prefetch_count=prefetch,
            max_retries=settings.max_retries,
            drain_poll_interval=settings.drain_poll_interval_seconds,
            drain_max_wait=settings.drain_max_wait_seconds,
        )
        with stop_on_signals(consumer):
            summary = consumer.run()

        if summary.state is not ConsumerState.DONE:
            audit.warning("execution interrupted before completion")
            return EXIT_INTERRUPTED
        if summary.drain_timed_out:
            audit.warning("drain wait exceeded, retry queue may still hold messages")

        audit.info(
            f"consumed valid={summary.valid} failed={summary.failed} "
            f"duplicates={summary.duplicates} retried={summary.retried} "
            f"dead_lettered={summary.dead_lettered}"
        )
        if summary.quarantined:
            audit.error(f"{summary.quarantined} acknowledged transaction(s) could not be stored")

        report = DepositReportService(gateway, settings.known_addresses).aggregate(
            execution_id, min_confirmations
        )
        for line in report.lines():
            print(line)
            audit.info(line)

        audit.info("execution finished")
        return EXIT_OK

    except KeyboardInterrupt:
        logger.warning("execution_interrupted")
        return EXIT_INTERRUPTED
    except DomainException as e:
        logger.error("execution_failed", code=e.code, error=e.message)
        _audit_failure(audit, e.message)
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("execution_failed_unexpectedly", error=str(e), error_type=type(e).__name__)
        _audit_failure(audit, str(e))
        return EXIT_FAILURE
    finally:
        if connection is not None:
            connection.release()
        engine.dispose()
        clear_execution()


def _audit_failure(audit: ExecutionAuditLog | None, message: str) -> None:
    if audit is None:
        return
    try:
        audit.error(f"execution failed: {message}")
    except PersistenceError as e:
        logger.error("execution_failure_not_audited", error=e.message)


def manage_dead_letters(args: argparse.Namespace, settings: Settings) -> int:
    try:
        connection = connect_broker(
            settings.broker_url,
            max_retries=settings.broker_connect_max_retries,
            interval_start=settings.broker_connect_interval_start,
            interval_step=settings.broker_connect_interval_step,
            interval_max=settings.broker_connect_interval_max,
        )
    except DomainException as e:
        logger.error("dead_letter_command_failed", code=e.code, error=e.message)
        return EXIT_FAILURE

    try:
        topology = topology_from_settings(settings)
        with connection.channel() as channel:
            declare_topology(channel, topology)

        if args.replay:
            replayed = replay_dead_letters(connection, topology, limit=args.limit)
            print(f"Replayed dead letters: {replayed}")
        else:
            print(f"Dead letters: {dead_letter_count(connection, topology)}")
        return EXIT_OK
    finally:
        connection.release()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)

    if args.command == "dlq":
        return manage_dead_letters(args, settings)
    return run_pipeline(args, settings)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
