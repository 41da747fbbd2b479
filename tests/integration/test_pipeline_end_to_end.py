import time
from uuid import uuid4

import pytest
from kombu import Producer
from sqlalchemy import text

from deposit_pipeline.core.enums import ConsumerState
from deposit_pipeline.domain.dedup import DeduplicationTracker
from deposit_pipeline.domain.exceptions import PersistenceError
from deposit_pipeline.domain.services.classification_service import ClassificationService
from deposit_pipeline.domain.services.persistence_gateway import BatchPersistenceGateway
from deposit_pipeline.infrastructure.messaging.queue_monitor import queue_depth
from deposit_pipeline.workers.consumer import TransactionConsumer
from deposit_pipeline.workers.dead_letters import dead_letter_count, replay_dead_letters
from deposit_pipeline.workers.publisher import TransactionPublisher


class FlakyGateway(BatchPersistenceGateway):
    """Fails the first ``failures`` persist calls, then behaves normally."""

    def __init__(self, *args, failures: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.persisted_batches = []

    def persist(self, valid_deposits, failed_transactions):
        if self.failures:
            self.failures -= 1
            raise PersistenceError("database unavailable")
        self.persisted_batches.append([d.txid for d in valid_deposits])
        return super().persist(valid_deposits, failed_transactions)


class RefusingGateway(BatchPersistenceGateway):
    """Rejects any write holding one of the ``refused`` txids, the way storage
    rejects a row that overflows a column."""

    def __init__(self, *args, refused, **kwargs):
        super().__init__(*args, **kwargs)
        self.refused = set(refused)

    def persist(self, valid_deposits, failed_transactions):
        if any(deposit.txid in self.refused for deposit in valid_deposits):
            raise PersistenceError("numeric field overflow")
        return super().persist(valid_deposits, failed_transactions)


class InterruptingClassifier(ClassificationService):
    """Calls ``before_record`` with the running record count ahead of each
    classification."""

    def __init__(self, *args, before_record, **kwargs):
        super().__init__(*args, **kwargs)
        self.before_record = before_record
        self.records = 0

    def classify(self, record, execution_id):
        self.records += 1
        self.before_record(self.records)
        return super().classify(record, execution_id)


def publish(connection, topology, data_dir, files, execution_id):
    with connection.channel() as channel:
        return TransactionPublisher(channel, topology, data_dir).publish_files(files, execution_id)


def build_consumer(
    connection, topology, gateway, execution_id, min_confirmations=6, classifier=None, **kwargs
):
    if classifier is None:
        classifier = ClassificationService(
            DeduplicationTracker(), min_confirmations, gateway.find_existing_txids
        )
    options = {"batch_size": 50, "drain_poll_interval": 0.05, "drain_max_wait": 2.0}
    options.update(kwargs)
    return TransactionConsumer(connection, topology, gateway, classifier, execution_id, **options)


def count_rows(engine, table: str) -> int:
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()


def depth(connection, queue) -> int:
    with connection.channel() as channel:
        return queue_depth(channel, queue)


class TestPipelineScenarios:

    def test_single_valid_deposit(
        self, engine, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file(
            "tx.json", [make_transaction(txid="1", address="A", amount=50, confirmations=6)]
        )

        published = publish(broker_connection, topology, tmp_path, [name], execution_id)
        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert published.published == 1
        assert summary.state is ConsumerState.DONE
        assert summary.valid == 1
        assert summary.drain_timed_out is False
        assert count_rows(engine, "deposits") == 1
        assert count_rows(engine, "failed_transactions") == 0

    def test_insufficient_confirmations(
        self, engine, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file(
            "tx.json", [make_transaction(txid="1", address="A", amount=50, confirmations=3)]
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert summary.failed == 1
        assert count_rows(engine, "deposits") == 0
        assert [f.reason for f in gateway.list_failed(execution_id)] == [
            "insufficient confirmations"
        ]

    def test_mixed_files_with_bad_file_skipped(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        first = write_transaction_file(
            "one.json",
            [
                make_transaction(txid="a"),
                make_transaction(txid="b", category="send"),
                {"txid": "c"},
            ],
        )
        broken = write_transaction_file("broken.json", raw="{oops")
        second = write_transaction_file(
            "two.json", [make_transaction(txid="d", amount=0), make_transaction(txid="e")]
        )

        published = publish(
            broker_connection, topology, tmp_path, [first, broken, "missing.json", second],
            execution_id,
        )
        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert published.published == 5
        assert published.files_processed == 2
        assert published.files_skipped == ["broken.json", "missing.json"]
        assert summary.valid == 2
        assert summary.failed == 3
        assert sorted(d.txid for d in gateway.list_deposits(execution_id)) == ["a", "e"]
        assert sorted(f.reason for f in gateway.list_failed(execution_id)) == [
            "invalid category",
            "invalid transaction: missing or malformed fields: address, amount, confirmations",
            "non-positive amount",
        ]

    def test_duplicate_in_run_is_valid_then_duplicate(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file(
            "tx.json", [make_transaction(txid="1", amount=5), make_transaction(txid="1", amount=7)]
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert summary.valid == 1
        assert summary.duplicates == 1
        deposits = gateway.list_deposits(execution_id)
        assert len(deposits) == 1
        assert deposits[0].amount == 5
        failed = gateway.list_failed(execution_id)
        assert [(f.txid, f.reason) for f in failed] == [("1", "duplicate transaction")]

    def test_duplicate_of_earlier_run(
        self, engine, broker_connection, topology, gateway,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file("tx.json", [make_transaction(txid="1")])
        first_run, second_run = uuid4(), uuid4()

        for execution_id in (first_run, second_run):
            publish(broker_connection, topology, tmp_path, [name], execution_id)
            build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert count_rows(engine, "deposits") == 1
        assert len(gateway.list_deposits(first_run)) == 1
        assert gateway.list_deposits(second_run) == []
        assert gateway.count_failed(second_run, "duplicate transaction") == 1

    def test_amount_storage_cannot_hold_is_a_failed_record(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file(
            "tx.json",
            [make_transaction(txid="huge", amount=1e300), make_transaction(txid="ok")],
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert summary.valid == 1
        assert summary.failed == 1
        assert [d.txid for d in gateway.list_deposits(execution_id)] == ["ok"]
        assert [(f.txid, f.amount, f.reason) for f in gateway.list_failed(execution_id)] == [
            ("huge", None, "invalid transaction: missing or malformed fields: amount")
        ]

    def test_batches_flush_at_threshold(
        self, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        gateway = FlakyGateway(session_factory, cipher, failures=0)
        name = write_transaction_file(
            "tx.json", [make_transaction(txid=str(i)) for i in range(5)]
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        build_consumer(broker_connection, topology, gateway, execution_id, batch_size=2).run()

        assert gateway.persisted_batches == [["0", "1"], ["2", "3"], ["4"]]


class TestFailureHandling:

    def test_persist_failure_retries_only_the_current_message(
        self, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        # the batch and both single-entry writes fail: storage is down
        gateway = FlakyGateway(session_factory, cipher, failures=3)
        name = write_transaction_file(
            "tx.json", [make_transaction(txid=txid) for txid in ("a", "b", "c")]
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        summary = build_consumer(
            broker_connection, topology, gateway, execution_id, batch_size=2, drain_max_wait=0.3
        ).run()

        # "b" triggered the failing flush; "a" stayed pending and went out with "c"
        assert summary.retried == 1
        assert summary.valid == 2
        assert gateway.persisted_batches == [["a", "c"]]
        assert sorted(d.txid for d in gateway.list_deposits(execution_id)) == ["a", "c"]

        with broker_connection.channel() as channel:
            retried = topology.retry_queue.bind(channel).get(no_ack=True)
        assert retried is not None
        assert retried.headers["x-retry-count"] == 1

    def test_transient_batch_failure_is_absorbed_entry_by_entry(
        self, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        gateway = FlakyGateway(session_factory, cipher, failures=1)
        name = write_transaction_file(
            "tx.json", [make_transaction(txid=txid) for txid in ("a", "b", "c")]
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        summary = build_consumer(
            broker_connection, topology, gateway, execution_id, batch_size=2
        ).run()

        assert summary.retried == 0
        assert summary.quarantined == 0
        assert gateway.persisted_batches == [["a"], ["b"], ["c"]]

    def test_unstorable_pending_entry_does_not_block_later_flushes(
        self, engine, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        gateway = RefusingGateway(session_factory, cipher, refused={"bad"})
        name = write_transaction_file(
            "tx.json",
            [make_transaction(txid="bad")]
            + [make_transaction(txid=f"ok{i}") for i in range(4)],
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        consumer = build_consumer(
            broker_connection, topology, gateway, execution_id, batch_size=2
        )
        summary = consumer.run()

        assert summary.state is ConsumerState.DONE
        assert summary.quarantined == 1
        assert len(consumer.batch) == 0
        assert summary.retried == 0
        assert summary.dead_lettered == 0
        assert sorted(d.txid for d in gateway.list_deposits(execution_id)) == [
            "ok0", "ok1", "ok2", "ok3",
        ]
        assert count_rows(engine, "deposits") == 4

    def test_unstorable_current_message_is_retried_not_quarantined(
        self, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        gateway = RefusingGateway(session_factory, cipher, refused={"bad"})
        name = write_transaction_file(
            "tx.json", [make_transaction(txid="ok0"), make_transaction(txid="bad")]
        )

        publish(broker_connection, topology, tmp_path, [name], execution_id)
        consumer = build_consumer(
            broker_connection, topology, gateway, execution_id, batch_size=2, drain_max_wait=0.3
        )
        summary = consumer.run()

        assert summary.retried == 1
        assert summary.quarantined == 0
        assert [d.txid for d in gateway.list_deposits(execution_id)] == ["ok0"]
        assert "bad" not in consumer.classifier.tracker
        assert depth(broker_connection, topology.retry_queue) == 1

    def test_retried_message_classifies_afresh(
        self, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        gateway = FlakyGateway(session_factory, cipher, failures=1)
        name = write_transaction_file("tx.json", [make_transaction(txid="a")])
        publish(broker_connection, topology, tmp_path, [name], execution_id)
        consumer = build_consumer(
            broker_connection, topology, gateway, execution_id, batch_size=1, drain_max_wait=0.3
        )

        consumer.run()

        # the failed flush must not leave "a" marked as seen
        assert "a" not in consumer.classifier.tracker

    def test_drain_waits_for_retry_queue_until_bound(
        self, broker_connection, topology, gateway, execution_id,
    ):
        with broker_connection.channel() as channel:
            Producer(channel).publish(
                {"tx": {}, "executionId": str(execution_id)},
                exchange=topology.retry_exchange,
                routing_key=topology.retry_routing_key,
                serializer="json",
            )
            TransactionPublisher(channel, topology, ".").publish_control(execution_id)

        started = time.monotonic()
        summary = build_consumer(
            broker_connection, topology, gateway, execution_id, drain_max_wait=0.5
        ).run()
        elapsed = time.monotonic() - started

        assert summary.state is ConsumerState.DONE
        assert summary.drain_timed_out is True
        assert elapsed >= 0.5
        assert depth(broker_connection, topology.retry_queue) == 1

    def test_undecodable_message_at_ceiling_is_dead_lettered(
        self, broker_connection, topology, gateway, execution_id,
    ):
        with broker_connection.channel() as channel:
            Producer(channel).publish(
                b"not json",
                exchange=topology.main_exchange,
                routing_key=topology.main_routing_key,
                content_type="application/json",
                content_encoding="utf-8",
                headers={"x-retry-count": 3},
            )
            TransactionPublisher(channel, topology, ".").publish_control(execution_id)

        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert summary.dead_lettered == 1
        assert summary.retried == 0
        assert summary.drain_timed_out is False
        assert dead_letter_count(broker_connection, topology) == 1

        with broker_connection.channel() as channel:
            dead = topology.dead_letter_queue.bind(channel).get(no_ack=True)
        assert dead.headers["x-exception-type"] == "EnvelopeDecodeError"
        assert dead.headers["x-retry-count"] == 3

    def test_undecodable_message_below_ceiling_is_retried(
        self, broker_connection, topology, gateway, execution_id,
    ):
        with broker_connection.channel() as channel:
            Producer(channel).publish(
                b"{}",
                exchange=topology.main_exchange,
                routing_key=topology.main_routing_key,
                content_type="application/json",
                content_encoding="utf-8",
            )
            TransactionPublisher(channel, topology, ".").publish_control(execution_id)

        summary = build_consumer(
            broker_connection, topology, gateway, execution_id, drain_max_wait=0.2
        ).run()

        assert summary.retried == 1
        assert depth(broker_connection, topology.retry_queue) == 1
        assert dead_letter_count(broker_connection, topology) == 0


class TestControlMessages:

    def test_stale_control_from_other_run_is_ignored(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        with broker_connection.channel() as channel:
            TransactionPublisher(channel, topology, tmp_path).publish_control(uuid4())
        name = write_transaction_file("tx.json", [make_transaction(txid="1")])
        publish(broker_connection, topology, tmp_path, [name], execution_id)

        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert summary.stale_controls == 1
        assert summary.valid == 1
        assert summary.state is ConsumerState.DONE

    def test_stop_request_ends_run_before_done(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file("tx.json", [make_transaction(txid="1")])
        publish(broker_connection, topology, tmp_path, [name], execution_id)
        consumer = build_consumer(broker_connection, topology, gateway, execution_id)

        consumer.request_stop()
        summary = consumer.run()

        assert summary.state is ConsumerState.RUNNING
        assert consumer.wait(timeout=0) is False

    def test_stop_after_consuming_flushes_partial_batch(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        name = write_transaction_file(
            "tx.json", [make_transaction(txid="1"), make_transaction(txid="2")]
        )
        publish(broker_connection, topology, tmp_path, [name], execution_id)
        classifier = InterruptingClassifier(
            DeduplicationTracker(), 6, gateway.find_existing_txids,
            before_record=lambda count: consumer.request_stop(),
        )
        consumer = build_consumer(
            broker_connection, topology, gateway, execution_id, classifier=classifier
        )

        summary = consumer.run()

        assert summary.state is ConsumerState.RUNNING
        assert summary.valid == 1
        assert len(consumer.batch) == 0
        assert [d.txid for d in gateway.list_deposits(execution_id)] == ["1"]

    def test_interrupt_flushes_pending_batch_before_propagating(
        self, broker_connection, topology, gateway, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        def interrupt_on_second(count):
            if count == 2:
                raise KeyboardInterrupt

        name = write_transaction_file(
            "tx.json", [make_transaction(txid="1"), make_transaction(txid="2")]
        )
        publish(broker_connection, topology, tmp_path, [name], execution_id)
        classifier = InterruptingClassifier(
            DeduplicationTracker(), 6, gateway.find_existing_txids,
            before_record=interrupt_on_second,
        )
        consumer = build_consumer(
            broker_connection, topology, gateway, execution_id, classifier=classifier
        )

        with pytest.raises(KeyboardInterrupt):
            consumer.run()

        assert len(consumer.batch) == 0
        assert [d.txid for d in gateway.list_deposits(execution_id)] == ["1"]

    def test_messages_after_control_are_flushed_together(
        self, broker_connection, topology, session_factory, cipher, execution_id,
        tmp_path, write_transaction_file, make_transaction,
    ):
        gateway = FlakyGateway(session_factory, cipher, failures=0)
        name = write_transaction_file(
            "tx.json", [make_transaction(txid=str(i)) for i in range(3)]
        )
        with broker_connection.channel() as channel:
            TransactionPublisher(channel, topology, tmp_path).publish_control(execution_id)
        publish(broker_connection, topology, tmp_path, [name], execution_id)

        summary = build_consumer(broker_connection, topology, gateway, execution_id).run()

        assert summary.state is ConsumerState.DONE
        assert summary.valid == 3
        assert gateway.persisted_batches == [["0", "1", "2"]]


class TestDeadLetterReplay:

    @pytest.fixture
    def dead_letters(self, broker_connection, topology):
        with broker_connection.channel() as channel:
            producer = Producer(channel)
            for index in range(3):
                producer.publish(
                    {"tx": {"txid": str(index)}, "executionId": str(uuid4())},
                    exchange=topology.dead_letter_exchange,
                    routing_key=topology.dead_letter_routing_key,
                    serializer="json",
                    headers={
                        "x-retry-count": 3,
                        "x-exception-type": "PersistenceError",
                        "x-exception-message": "database unavailable",
                    },
                )

    def test_count(self, broker_connection, topology, dead_letters):
        assert dead_letter_count(broker_connection, topology) == 3

    def test_replay_moves_messages_with_fresh_budget(
        self, broker_connection, topology, dead_letters
    ):
        replayed = replay_dead_letters(broker_connection, topology)

        assert replayed == 3
        assert dead_letter_count(broker_connection, topology) == 0
        assert depth(broker_connection, topology.main_queue) == 3

        with broker_connection.channel() as channel:
            message = topology.main_queue.bind(channel).get(no_ack=True)
        assert message.headers["x-retry-count"] == 0
        assert "x-replayed-at" in message.headers
        assert "x-exception-type" not in message.headers
        assert message.decode()["tx"] == {"txid": "0"}

    def test_replay_respects_limit(self, broker_connection, topology, dead_letters):
        assert replay_dead_letters(broker_connection, topology, limit=2) == 2
        assert dead_letter_count(broker_connection, topology) == 1
