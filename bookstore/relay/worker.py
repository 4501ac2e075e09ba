"""
CRM Relay — order queue consumer

Takes each new order off the ``orders`` queue and creates a matching Task in
the CRM. Messages are handled strictly one at a time so that CRM records are
created in queue order.

    Received ─▶ Authenticated (cached token) ─▶ Pushed ─▶ Ack
        │                                  401 │ re-auth + retry once
        └─▶ AuthFailed / rejected ─────────────┴─▶ logged, Ack
                                                   (+ orders-dlq when enabled)

By default a terminal failure loses the message. Routing it to the
dead-letter queue is opt-in through ``RELAY_DEAD_LETTER``.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import date
from uuid import uuid4

from ..common.bus import BusFactory, Delivery, run_consumer
from ..common.crm import CrmClient
from ..common.errors import (
    AuthFailure,
    ConnectFailure,
    CrmRequestFailure,
    IntegrationError,
    ParseFailure,
)
from ..common.messages import OrderMessage, decode
from ..common.settings import Settings, dead_letter_name

logger = logging.getLogger(__name__)


def map_order_to_task(order: OrderMessage, today: date | None = None) -> dict:
    """
    Order -> CRM Task.

    Only the first line item is described; multi-item orders lose the other
    lines in the CRM copy. The ``Web Order #<id>`` line is what the status
    round trip uses to find the order again.
    """
    first = order.items[0] if order.items else None
    description = "\n".join(
        [
            f"Web Order #{order.id}",
            f"Customer: {order.customer_email}",
            f"Total Amount: {order.total_amount:.2f}",
            f"Book ID: {first.book_id if first else 0}",
            f"Quantity: {first.quantity if first else 0}",
        ]
    )
    return {
        "Subject": f"New Web Order from {order.customer_email}",
        "Description": description,
        "Status": "Not Started",
        "Priority": "Normal",
        "ActivityDate": (today or date.today()).isoformat(),
    }


@dataclass
class RelayStats:
    received: int = 0
    pushed: int = 0
    failed: int = 0
    dead_lettered: int = 0


class CrmRelayWorker:
    def __init__(self, settings: Settings, crm: CrmClient, bus_factory: BusFactory) -> None:
        self.settings = settings
        self.crm = crm
        self.bus_factory = bus_factory
        self.stats = RelayStats()

    async def handle(self, delivery: Delivery) -> None:
        self.stats.received += 1
        correlation_id = uuid4().hex
        try:
            order = decode(OrderMessage, delivery.body)
        except ParseFailure as exc:
            logger.error("Dropping unreadable order message (%s): %s", correlation_id, exc)
            self.stats.failed += 1
            await self._dead_letter(delivery, "unparseable", correlation_id, str(exc))
            return

        logger.info("Received Order #%s for %s (%s)", order.id, order.customer_email, correlation_id)
        try:
            record_id = await self.crm.create_task(map_order_to_task(order))
        except AuthFailure as exc:
            reason, response = "crm_auth_failed", str(exc)
        except CrmRequestFailure as exc:
            reason, response = "crm_rejected", exc.body
        except ConnectFailure as exc:
            reason, response = "crm_unreachable", str(exc)
        else:
            self.stats.pushed += 1
            logger.info("Order #%s pushed to CRM as %s", order.id, record_id or "<unknown id>")
            return

        self.stats.failed += 1
        logger.error("Failed to push Order #%s to CRM (%s): %s", order.id, reason, response)
        await self._dead_letter(delivery, reason, correlation_id, response)

    async def _dead_letter(self, delivery: Delivery, reason: str, correlation_id: str, response: str) -> None:
        if not self.settings.relay_dead_letter:
            return
        dlq = dead_letter_name(self.settings.orders_queue)
        headers = {
            **delivery.headers,
            "x-dlq-reason": reason,
            "x-correlation-id": correlation_id,
        }
        if response:
            headers["x-crm-response"] = response
        try:
            async with self.bus_factory() as bus:
                await bus.declare_queue(dlq, durable=True)
                await bus.publish(dlq, delivery.body, headers=headers, persistent=True)
        except IntegrationError:
            logger.exception("Failed to publish message to %s (%s)", dlq, correlation_id)
            return
        self.stats.dead_lettered += 1
        logger.info("Published message to %s (reason: %s, %s)", dlq, reason, correlation_id)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        await run_consumer(
            self.bus_factory,
            self.settings.orders_queue,
            self.handle,
            shutdown_event,
            max_backoff=self.settings.bus_reconnect_max_seconds,
        )

    def health(self) -> dict:
        return asdict(self.stats)
