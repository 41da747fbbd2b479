from kombu import Connection
from kombu.exceptions import OperationalError

from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.domain.exceptions import BrokerConnectionError

logger = get_logger(__name__)


def connect_broker(
    broker_url: str,
    max_retries: int = 5,
    interval_start: float = 1.0,
    interval_step: float = 2.0,
    interval_max: float = 10.0,
) -> Connection:
    """Open a broker connection, retrying with a growing interval.

    Raises ``BrokerConnectionError`` once ``max_retries`` is exhausted.
    """
    connection = Connection(broker_url)

    def _on_retry(exc, interval):
        logger.warning("broker_connect_retry", error=str(exc), retry_in=interval)

    try:
        connection.ensure_connection(
            errback=_on_retry,
            max_retries=max_retries,
            interval_start=interval_start,
            interval_step=interval_step,
            interval_max=interval_max,
        )
    except (OperationalError, OSError, *connection.connection_errors) as e:
        connection.release()
        logger.error("broker_unreachable", max_retries=max_retries, error=str(e))
        raise BrokerConnectionError(f"Broker unreachable after {max_retries} retries: {e}") from e

    logger.info("broker_connected", broker=connection.as_uri())
    return connection
