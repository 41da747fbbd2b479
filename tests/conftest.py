import json
import os
from collections.abc import Callable, Generator
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from kombu import Connection
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from deposit_pipeline.domain.services.persistence_gateway import BatchPersistenceGateway
from deposit_pipeline.infrastructure import models  # noqa: F401
from deposit_pipeline.infrastructure.database.base import Base
from deposit_pipeline.infrastructure.database.session import (
    create_db_engine,
    create_session_factory,
)
from deposit_pipeline.infrastructure.external.encryption import FieldCipher
from deposit_pipeline.infrastructure.messaging.topology import (
    Topology,
    build_topology,
    declare_topology,
)

# Point at a disposable PostgreSQL database to run against the production dialect
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")
TEST_ENCRYPTION_KEY = "test-encryption-key"


def _create_test_engine() -> Engine:
    if TEST_DATABASE_URL.startswith("sqlite"):
        # one shared in-memory database for every session of the test
        return create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_db_engine(TEST_DATABASE_URL, pool_size=5, max_overflow=5)


@pytest.fixture(scope="function")
def engine() -> Generator[Engine, None, None]:
    test_engine = _create_test_engine()
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def cipher() -> FieldCipher:
    return FieldCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def gateway(session_factory: sessionmaker[Session], cipher: FieldCipher) -> BatchPersistenceGateway:
    return BatchPersistenceGateway(session_factory, cipher, chunk_size=500)


@pytest.fixture
def execution_id() -> UUID:
    return uuid4()


@pytest.fixture
def broker_connection() -> Generator[Connection, None, None]:
    # the memory transport keeps broker state per process, so every test
    # gets its own topology names (see ``topology``)
    connection = Connection("memory://", transport_options={"polling_interval": 0.01})
    connection.connect()

    yield connection

    connection.release()


@pytest.fixture
def topology(broker_connection: Connection) -> Topology:
    suffix = uuid4().hex[:8]
    test_topology = build_topology(
        main_exchange=f"transactions-{suffix}",
        main_queue=f"transactions-{suffix}",
        main_routing_key=f"transaction-{suffix}",
        retry_exchange=f"transactions-{suffix}.retry",
        retry_queue=f"transactions-{suffix}.retry",
        retry_routing_key=f"transaction-{suffix}.retry",
        dead_letter_exchange=f"transactions-{suffix}.dlx",
        dead_letter_queue=f"transactions-{suffix}.dlq",
        dead_letter_routing_key=f"transaction-{suffix}.failed",
        retry_delay_ms=50,
    )

    with broker_connection.channel() as channel:
        declare_topology(channel, test_topology)

    return test_topology


@pytest.fixture
def write_transaction_file(tmp_path: Path) -> Callable[..., str]:
    def _write(name: str, transactions: list | None = None, raw: str | None = None) -> str:
        content = raw if raw is not None else json.dumps({"transactions": transactions or []})
        (tmp_path / name).write_text(content, encoding="utf-8")
        return name

    return _write


@pytest.fixture
def make_transaction() -> Callable[..., dict]:
    def _make(
        txid: str = "tx-1",
        address: str = "mvd6qFeVkqH6MNAS2Y2cLifbdaX5XUkbZJ",
        amount: float = 50,
        confirmations: int = 6,
        category: str = "receive",
    ) -> dict:
        return {
            "txid": txid,
            "address": address,
            "amount": amount,
            "confirmations": confirmations,
            "category": category,
        }

    return _make
