from collections.abc import Iterable

from kombu import Queue


def queue_depth(channel, queue: Queue) -> int:
    """Messages ready in ``queue`` (unacknowledged deliveries are not counted)."""
    result = queue.bind(channel).queue_declare(passive=True)
    return result.message_count


def queues_empty(channel, queues: Iterable[Queue]) -> bool:
    return all(queue_depth(channel, queue) == 0 for queue in queues)
