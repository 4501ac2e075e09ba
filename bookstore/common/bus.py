"""
Message Bus Client — queues on top of Redis lists

The broker is Redis (``redis.asyncio``). A queue is a list, each entry a JSON
envelope that keeps the body together with its headers, so a message can be
moved between queues verbatim.

    bus:queue:<name>     pending envelopes, FIFO (RPUSH in, LMOVE out)
    bus:unacked:<name>   fetched but not yet acked / nacked
    bus:queues           hash name -> "durable" | "transient"

    publish ──▶ [ queue ] ──get──▶ [ unacked ] ──ack──▶ (gone)
                   ▲                    │
                   └──── nack(requeue) ─┘   (back to the head)

Durability is a declaration only: the first declaration of a queue wins and
is reported back by ``declare_queue``. The primary queues are declared
transient, dead-letter queues durable.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import ConnectFailure, IntegrationError, PublishFailure

logger = logging.getLogger(__name__)

DECLARED_KEY = "bus:queues"


def _queue_key(name: str) -> str:
    return f"bus:queue:{name}"


def _unacked_key(name: str) -> str:
    return f"bus:unacked:{name}"


@contextmanager
def _broker_errors(action: str):
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise ConnectFailure(f"Broker unreachable while {action}: {exc}") from exc
    except RedisError as exc:
        raise PublishFailure(f"Broker rejected {action}: {exc}") from exc


@dataclass(frozen=True)
class QueueInfo:
    name: str
    durable: bool
    message_count: int


@dataclass
class Delivery:
    """A fetched message. ``raw`` is the stored envelope and doubles as the delivery tag."""
    queue: str
    body: str
    raw: str
    headers: dict[str, Any] = field(default_factory=dict)
    timestamp: int | None = None
    persistent: bool = False
    message_id: str = ""

    @classmethod
    def from_envelope(cls, queue: str, raw: str) -> "Delivery":
        try:
            envelope = json.loads(raw)
        except ValueError:
            envelope = None
        if not isinstance(envelope, dict) or "body" not in envelope:
            # Pushed by something that does not speak the envelope format.
            return cls(queue=queue, body=raw, raw=raw)
        return cls(
            queue=queue,
            body=envelope["body"],
            raw=raw,
            headers=envelope.get("headers") or {},
            timestamp=envelope.get("timestamp"),
            persistent=bool(envelope.get("persistent")),
            message_id=envelope.get("id", ""),
        )


class MessageBus:
    """One connection to the broker. Not meant to be shared between a publisher and a consumer."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    @classmethod
    async def connect(cls, url: str, *, connect_timeout: float = 5.0) -> "MessageBus":
        redis = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )
        try:
            with _broker_errors("connecting"):
                await redis.ping()
        except ConnectFailure:
            await redis.aclose()
            raise
        return cls(redis)

    async def close(self) -> None:
        await self._redis.aclose()

    # ── Queue management ─────────────────────────

    async def declare_queue(self, name: str, durable: bool = False) -> QueueInfo:
        with _broker_errors(f"declaring {name}"):
            await self._redis.hsetnx(DECLARED_KEY, name, "durable" if durable else "transient")
            flag = await self._redis.hget(DECLARED_KEY, name)
            count = await self._redis.llen(_queue_key(name))
        return QueueInfo(name=name, durable=flag == "durable", message_count=count)

    async def message_count(self, name: str) -> int:
        with _broker_errors(f"counting {name}"):
            return await self._redis.llen(_queue_key(name))

    async def unacked_count(self, name: str) -> int:
        """Messages fetched from ``name`` and neither acked nor nacked yet."""
        with _broker_errors(f"counting unacked {name}"):
            return await self._redis.llen(_unacked_key(name))

    async def purge(self, name: str) -> int:
        """Drop every pending message; returns how many were removed."""
        with _broker_errors(f"purging {name}"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.llen(_queue_key(name))
                pipe.delete(_queue_key(name))
                count, _ = await pipe.execute()
        return count

    # ── Publish ──────────────────────────────────

    async def publish(
        self,
        queue: str,
        body: str | bytes,
        *,
        headers: Mapping[str, Any] | None = None,
        persistent: bool = False,
    ) -> None:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        envelope = json.dumps(
            {
                "id": uuid4().hex,
                "body": body,
                "headers": dict(headers or {}),
                "timestamp": int(time.time()),
                "persistent": persistent,
            }
        )
        with _broker_errors(f"publishing to {queue}"):
            await self._redis.rpush(_queue_key(queue), envelope)

    # ── Consume ──────────────────────────────────

    async def get(self, queue: str) -> Delivery | None:
        """Fetch the head of the queue without acknowledging it."""
        with _broker_errors(f"fetching from {queue}"):
            raw = await self._redis.lmove(_queue_key(queue), _unacked_key(queue), "LEFT", "RIGHT")
        if raw is None:
            return None
        return Delivery.from_envelope(queue, raw)

    async def ack(self, delivery: Delivery) -> None:
        with _broker_errors(f"acking on {delivery.queue}"):
            await self._redis.lrem(_unacked_key(delivery.queue), 1, delivery.raw)

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        """Reject a delivery; with ``requeue`` it goes back to the head of its queue."""
        with _broker_errors(f"nacking on {delivery.queue}"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(_unacked_key(delivery.queue), 1, delivery.raw)
                if requeue:
                    pipe.lpush(_queue_key(delivery.queue), delivery.raw)
                await pipe.execute()

    async def consume(
        self,
        queue: str,
        handler: Callable[[Delivery], Awaitable[None]],
        shutdown_event: asyncio.Event,
        idle_sleep: float = 0.1,
    ) -> None:
        """
        Handle messages one at a time until ``shutdown_event`` is set.

        Every delivery is acknowledged after its handler returns, whatever
        the outcome; handlers decide on their own whether to dead-letter.
        A delivery whose handler is cancelled goes back to the head of the
        queue instead.
        """
        while not shutdown_event.is_set():
            delivery = await self.get(queue)
            if delivery is None:
                await asyncio.sleep(idle_sleep)
                continue
            try:
                await handler(delivery)
            except asyncio.CancelledError:
                await self._requeue_interrupted(delivery)
                raise
            except Exception:
                logger.exception("Handler failed for message from %s", queue)
            await self.ack(delivery)

    async def _requeue_interrupted(self, delivery: Delivery) -> None:
        try:
            await self.nack(delivery, requeue=True)
        except IntegrationError:
            logger.exception("Could not requeue interrupted message on %s", delivery.queue)
            return
        logger.warning("Requeued interrupted message on %s", delivery.queue)


BusFactory = Callable[[], AbstractAsyncContextManager[MessageBus]]


@asynccontextmanager
async def open_bus(url: str, *, connect_timeout: float = 5.0) -> AsyncIterator[MessageBus]:
    bus = await MessageBus.connect(url, connect_timeout=connect_timeout)
    try:
        yield bus
    finally:
        await bus.close()


def bus_factory_for(url: str, connect_timeout: float = 5.0) -> BusFactory:
    return lambda: open_bus(url, connect_timeout=connect_timeout)


async def sleep_or_shutdown(shutdown_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; returns True when woken by shutdown."""
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def stop_background(task: asyncio.Task, shutdown_event: asyncio.Event, grace: float = 5.0) -> None:
    """
    Ask a background loop to stop and wait for it.

    The in-flight message, if any, gets ``grace`` seconds to finish and be
    acked; after that the task is cancelled and the message requeued.
    """
    shutdown_event.set()
    try:
        await asyncio.wait_for(task, timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("Background task did not stop within %.1fs, cancelled", grace)
    except asyncio.CancelledError:
        pass


async def run_consumer(
    bus_factory: BusFactory,
    queue: str,
    handler: Callable[[Delivery], Awaitable[None]],
    shutdown_event: asyncio.Event,
    *,
    durable: bool = False,
    max_backoff: float = 30.0,
) -> None:
    """
    Long-running consumer loop with reconnect.

    A lost broker connection is retried with exponential backoff
    (0.5s, 1s, 2s, ... capped at ``max_backoff``) until shutdown.
    """
    attempt = 0
    while not shutdown_event.is_set():
        try:
            async with bus_factory() as bus:
                await bus.declare_queue(queue, durable=durable)
                attempt = 0
                logger.info("Listening on '%s'", queue)
                await bus.consume(queue, handler, shutdown_event)
        except IntegrationError as exc:
            attempt += 1
            delay = min(0.5 * 2 ** (attempt - 1), max_backoff)
            logger.warning("Attempt %d to consume '%s' failed: %s; retrying in %.1fs", attempt, queue, exc, delay)
            await sleep_or_shutdown(shutdown_event, delay)
    logger.info("Stopped consuming '%s'", queue)
