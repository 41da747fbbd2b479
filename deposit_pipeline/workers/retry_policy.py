from kombu import Exchange, Producer
from kombu.message import Message

from deposit_pipeline.core.constants import (
    EXCEPTION_MESSAGE_HEADER,
    EXCEPTION_TYPE_HEADER,
    MAX_HEADER_VALUE_LENGTH,
    PERSISTENT_DELIVERY_MODE,
    RETRY_COUNT_HEADER,
)
from deposit_pipeline.core.enums import MessageOutcome
from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.core.metrics import messages_dead_lettered_total, messages_retried_total
from deposit_pipeline.infrastructure.messaging.topology import Topology

logger = get_logger(__name__)

REPUBLISH_RETRY_POLICY = {
    "max_retries": 3,
    "interval_start": 0.5,
    "interval_step": 1.0,
    "interval_max": 3.0,
}


def retry_count(message: Message) -> int:
    headers = message.headers or {}
    try:
        return max(int(headers.get(RETRY_COUNT_HEADER, 0)), 0)
    except (TypeError, ValueError):
        return 0


class RetryPolicy:
    """Bounded retry through the delayed retry queue, then dead-letter.

    A failed message is never requeued in place. It is republished to the
    retry exchange (or the dead-letter exchange once ``max_retries`` is
    reached) and only then acknowledged. If the republish itself fails the
    original stays unacknowledged and the error propagates.
    """

    def __init__(self, producer: Producer, topology: Topology, max_retries: int = 3):
        self.producer = producer
        self.topology = topology
        self.max_retries = max_retries

    def handle_failure(self, message: Message, exc: BaseException) -> MessageOutcome:
        attempts = retry_count(message)
        headers = dict(message.headers or {})
        exception_type = type(exc).__name__

        if attempts < self.max_retries:
            headers[RETRY_COUNT_HEADER] = attempts + 1
            self._republish(
                message, self.topology.retry_exchange, self.topology.retry_routing_key, headers
            )
            message.ack()

            messages_retried_total.inc()
            logger.warning(
                "message_failed_will_retry",
                attempt=attempts + 1,
                max_retries=self.max_retries,
                exception_type=exception_type,
                exception=str(exc),
            )
            return MessageOutcome.RETRIED

        headers[RETRY_COUNT_HEADER] = attempts
        headers[EXCEPTION_TYPE_HEADER] = exception_type
        headers[EXCEPTION_MESSAGE_HEADER] = str(exc)[:MAX_HEADER_VALUE_LENGTH]
        self._republish(
            message,
            self.topology.dead_letter_exchange,
            self.topology.dead_letter_routing_key,
            headers,
        )
        message.ack()

        messages_dead_lettered_total.labels(exception_type=exception_type).inc()
        logger.error(
            "message_failed_max_retries_sent_to_dlq",
            retries=attempts,
            max_retries=self.max_retries,
            exception_type=exception_type,
            exception=str(exc),
        )
        return MessageOutcome.DEAD_LETTERED

    def _republish(
        self, message: Message, exchange: Exchange, routing_key: str, headers: dict
    ) -> None:
        try:
            self.producer.publish(
                message.body,
                exchange=exchange,
                routing_key=routing_key,
                headers=headers,
                content_type=message.content_type,
                content_encoding=message.content_encoding,
                delivery_mode=PERSISTENT_DELIVERY_MODE,
                retry=True,
                retry_policy=REPUBLISH_RETRY_POLICY,
            )
        except Exception as e:
            # Original stays unacked: the broker redelivers it once this consumer dies
            logger.critical(
                "failed_to_republish_message",
                exchange=exchange.name,
                routing_key=routing_key,
                error=str(e),
            )
            raise
