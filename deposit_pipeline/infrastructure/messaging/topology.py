from dataclasses import dataclass

from kombu import Exchange, Queue

from deposit_pipeline.config import Settings
from deposit_pipeline.core.constants import (
    DEAD_LETTER_EXCHANGE_ARG,
    DEAD_LETTER_ROUTING_KEY_ARG,
    MESSAGE_TTL_ARG,
)
from deposit_pipeline.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Topology:
    main_exchange: Exchange
    main_queue: Queue
    retry_exchange: Exchange
    retry_queue: Queue
    dead_letter_exchange: Exchange
    dead_letter_queue: Queue

    @property
    def main_routing_key(self) -> str:
        return self.main_queue.routing_key

    @property
    def retry_routing_key(self) -> str:
        return self.retry_queue.routing_key

    @property
    def dead_letter_routing_key(self) -> str:
        return self.dead_letter_queue.routing_key

    @property
    def queues(self) -> tuple[Queue, ...]:
        return (self.main_queue, self.retry_queue, self.dead_letter_queue)


def build_topology(
    main_exchange: str = "transactions",
    main_queue: str = "transactions",
    main_routing_key: str = "transaction",
    retry_exchange: str = "transactions.retry",
    retry_queue: str = "transactions.retry",
    retry_routing_key: str = "transaction.retry",
    dead_letter_exchange: str = "transactions.dlx",
    dead_letter_queue: str = "transactions.dlq",
    dead_letter_routing_key: str = "transaction.failed",
    retry_delay_ms: int = 5000,
) -> Topology:
    main_ex = Exchange(main_exchange, type="direct", durable=True)
    retry_ex = Exchange(retry_exchange, type="direct", durable=True)
    dlx = Exchange(dead_letter_exchange, type="direct", durable=True)

    return Topology(
        main_exchange=main_ex,
        # rejected or expired work goes to the dead-letter exchange
        main_queue=Queue(
            main_queue,
            exchange=main_ex,
            routing_key=main_routing_key,
            durable=True,
            queue_arguments={
                DEAD_LETTER_EXCHANGE_ARG: dead_letter_exchange,
                DEAD_LETTER_ROUTING_KEY_ARG: dead_letter_routing_key,
            },
        ),
        retry_exchange=retry_ex,
        # parked messages expire back into the main exchange after the delay
        retry_queue=Queue(
            retry_queue,
            exchange=retry_ex,
            routing_key=retry_routing_key,
            durable=True,
            queue_arguments={
                MESSAGE_TTL_ARG: retry_delay_ms,
                DEAD_LETTER_EXCHANGE_ARG: main_exchange,
                DEAD_LETTER_ROUTING_KEY_ARG: main_routing_key,
            },
        ),
        dead_letter_exchange=dlx,
        dead_letter_queue=Queue(
            dead_letter_queue,
            exchange=dlx,
            routing_key=dead_letter_routing_key,
            durable=True,
        ),
    )


def topology_from_settings(settings: Settings) -> Topology:
    return build_topology(
        main_exchange=settings.main_exchange,
        main_queue=settings.main_queue,
        main_routing_key=settings.main_routing_key,
        retry_exchange=settings.retry_exchange,
        retry_queue=settings.retry_queue,
        retry_routing_key=settings.retry_routing_key,
        dead_letter_exchange=settings.dead_letter_exchange,
        dead_letter_queue=settings.dead_letter_queue,
        dead_letter_routing_key=settings.dead_letter_routing_key,
        retry_delay_ms=settings.retry_delay_ms,
    )


def declare_topology(channel, topology: Topology) -> None:
    """Declare exchanges, queues and bindings. Safe to call on every run."""
    for queue in topology.queues:
        # Queue.declare also declares its exchange and the binding
        queue.bind(channel).declare()
        logger.info(
            "queue_declared",
            queue=queue.name,
            exchange=queue.exchange.name,
            routing_key=queue.routing_key,
        )
