"""
Shop Service — dead-letter queue remediation

Operator tools for ``<queue>-dlq``. Each function works on a bus connection
opened for the one request and never keeps state between calls.

None of the multi-message operations is atomic. A crash half way through a
walk can leave one message duplicated (republished, not yet acked) or parked
in the unacked list. ``requeue_one`` and ``delete_one`` locate their target
by position, so they assume a single operator: messages dead-lettered while
a walk is running can end up reordered or interleaved with the walk.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from ..common.bus import Delivery, MessageBus
from ..common.errors import IntegrationError
from ..common.settings import dead_letter_name

logger = logging.getLogger(__name__)


def _describe(delivery: Delivery) -> dict:
    timestamp = None
    if delivery.timestamp and delivery.timestamp > 0:
        timestamp = datetime.fromtimestamp(delivery.timestamp, timezone.utc).isoformat()
    return {"body": delivery.body, "properties": delivery.headers, "timestamp": timestamp}


async def list_messages(bus: MessageBus, queue: str, max_count: int) -> list[dict]:
    """
    Peek at up to ``max_count`` messages.

    They are fetched without ack and afterwards nacked with requeue in
    reverse order, which puts them back at the head exactly as they were.
    """
    dlq = dead_letter_name(queue)
    await bus.declare_queue(dlq, durable=True)
    held: list[Delivery] = []
    try:
        while len(held) < max_count:
            delivery = await bus.get(dlq)
            if delivery is None:
                break
            held.append(delivery)
    finally:
        for delivery in reversed(held):
            await bus.nack(delivery, requeue=True)
    return [_describe(d) for d in held]


async def count_messages(bus: MessageBus, queue: str) -> int:
    info = await bus.declare_queue(dead_letter_name(queue), durable=True)
    return info.message_count


async def _move(bus: MessageBus, delivery: Delivery, target: str) -> None:
    """Republish to ``target`` (persistent, same headers), then ack the original."""
    try:
        await bus.publish(target, delivery.body, headers=delivery.headers, persistent=True)
    except IntegrationError:
        await bus.nack(delivery, requeue=True)
        raise
    await bus.ack(delivery)


async def requeue_all(bus: MessageBus, queue: str) -> int:
    dlq = dead_letter_name(queue)
    await bus.declare_queue(dlq, durable=True)
    await bus.declare_queue(queue, durable=True)
    requeued = 0
    while (delivery := await bus.get(dlq)) is not None:
        await _move(bus, delivery, queue)
        requeued += 1
    logger.info("Requeued %d message(s) from %s to %s", requeued, dlq, queue)
    return requeued


async def _rewalk(
    bus: MessageBus,
    queue: str,
    index: int,
    on_target: Callable[[Delivery], Awaitable[None]],
) -> int:
    """
    Take every message off the DLQ once, handing the one at ``index`` to
    ``on_target`` and putting the others back at the tail.

    The number of steps is the queue length when the walk starts, so the
    messages put back are not walked a second time.
    """
    dlq = dead_letter_name(queue)
    await bus.declare_queue(dlq, durable=True)
    total = await bus.message_count(dlq)
    hits = 0
    for position in range(total):
        delivery = await bus.get(dlq)
        if delivery is None:
            break
        if position == index:
            await on_target(delivery)
            hits += 1
        else:
            await _move(bus, delivery, dlq)
    return hits


async def requeue_one(bus: MessageBus, queue: str, index: int) -> int:
    await bus.declare_queue(queue, durable=True)

    async def to_work_queue(delivery: Delivery) -> None:
        await _move(bus, delivery, queue)

    requeued = await _rewalk(bus, queue, index, to_work_queue)
    logger.info("Requeued message %d of %s: %d moved", index, dead_letter_name(queue), requeued)
    return requeued


async def delete_one(bus: MessageBus, queue: str, index: int) -> int:
    deleted = await _rewalk(bus, queue, index, bus.ack)
    logger.info("Deleted message %d of %s: %d removed", index, dead_letter_name(queue), deleted)
    return deleted


async def purge(bus: MessageBus, queue: str) -> int:
    dlq = dead_letter_name(queue)
    await bus.declare_queue(dlq, durable=True)
    purged = await bus.purge(dlq)
    logger.info("Purged %d message(s) from %s", purged, dlq)
    return purged
