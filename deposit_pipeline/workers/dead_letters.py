from datetime import UTC, datetime

from kombu import Connection, Producer

from deposit_pipeline.core.constants import (
    EXCEPTION_MESSAGE_HEADER,
    EXCEPTION_TYPE_HEADER,
    PERSISTENT_DELIVERY_MODE,
    REPLAYED_AT_HEADER,
    RETRY_COUNT_HEADER,
)
from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.infrastructure.messaging.queue_monitor import queue_depth
from deposit_pipeline.infrastructure.messaging.topology import Topology

logger = get_logger(__name__)


def dead_letter_count(connection: Connection, topology: Topology) -> int:
    with connection.channel() as channel:
        return queue_depth(channel, topology.dead_letter_queue)


def replay_dead_letters(
    connection: Connection, topology: Topology, limit: int | None = None
) -> int:
    """Move dead letters back to the main exchange with a fresh retry budget.

    Each message is acknowledged on the dead-letter queue only after it has
    been republished, so a crash mid-replay can at worst duplicate a message,
    which the deposit insert absorbs.
    """
    replayed = 0

    with connection.channel() as channel:
        producer = Producer(channel)
        dlq = topology.dead_letter_queue.bind(channel)

        while limit is None or replayed < limit:
            message = dlq.get(no_ack=False)
            if message is None:
                break

            headers = dict(message.headers or {})
            failure = headers.pop(EXCEPTION_MESSAGE_HEADER, None)
            headers.pop(EXCEPTION_TYPE_HEADER, None)
            headers[RETRY_COUNT_HEADER] = 0
            headers[REPLAYED_AT_HEADER] = datetime.now(UTC).isoformat()

            producer.publish(
                message.body,
                exchange=topology.main_exchange,
                routing_key=topology.main_routing_key,
                headers=headers,
                content_type=message.content_type,
                content_encoding=message.content_encoding,
                delivery_mode=PERSISTENT_DELIVERY_MODE,
                retry=True,
            )
            message.ack()
            replayed += 1
            logger.info("dead_letter_replayed", previous_failure=failure)

    logger.info("dead_letter_replay_completed", replayed=replayed, limit=limit)
    return replayed
