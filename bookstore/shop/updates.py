"""
Shop Service — status-update consumer

Runs inside the web process. Reads CRM status changes from
``order-updates``, finds the order referenced in the free-text description
and stores the new status, then tells connected browsers.

    "Web Order #42 from Salesforce"  ──▶  order 42
    "no id here"                     ──▶  dropped (logged)

Unreadable messages and unknown orders are logged and dropped; neither is
retried nor dead-lettered. A repeated status is a no-op, so duplicate
deliveries are harmless.
"""

import asyncio
import logging
import re

from sqlalchemy.orm import sessionmaker

from ..common.bus import BusFactory, Delivery, run_consumer
from ..common.errors import NotFound, ParseFailure
from ..common.messages import StatusUpdate, decode
from ..common.settings import Settings
from . import commands
from .notifications import NotificationHub

logger = logging.getLogger(__name__)

ORDER_REFERENCE = re.compile(r"(Web )?Order #(\d+)")
FINAL_STATUSES = {"activated", "completed"}


def parse_order_id(description: str) -> int:
    match = ORDER_REFERENCE.search(description or "")
    if match is None:
        raise ParseFailure(f"Could not parse Order ID from description: {description!r}")
    return int(match.group(2))


class StatusUpdateConsumer:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        hub: NotificationHub,
        bus_factory: BusFactory,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.hub = hub
        self.bus_factory = bus_factory

    async def handle(self, delivery: Delivery) -> None:
        logger.info("Received update: %s", delivery.body)
        try:
            update = decode(StatusUpdate, delivery.body)
            order_id = parse_order_id(update.description)
        except ParseFailure as exc:
            logger.warning("Dropping status update: %s", exc)
            return
        await self.apply(order_id, update.status)

    async def apply(self, order_id: int, status: str) -> bool:
        """Store ``status`` on the order and notify; returns True when something changed."""
        async with self.session_factory() as session:
            try:
                order = await commands.update_order_status(session, order_id, status)
            except NotFound:
                logger.warning("Order #%s not found in database.", order_id)
                return False
        if order is None:
            return False

        logger.info("Updating Order #%s Status: %s -> %s", order_id, order["previous_status"], status)
        if status.lower() in FINAL_STATUSES:
            logger.info(
                "Order #%s finished: customer=%s date=%s total=%s status=%s",
                order_id,
                order["customer_email"],
                order["order_date"],
                order["total_amount"],
                status,
            )
        try:
            self.hub.publish({"orderId": order_id, "status": status})
        except Exception:
            logger.exception("Failed to notify clients about Order #%s", order_id)
        return True

    async def run(self, shutdown_event: asyncio.Event) -> None:
        await run_consumer(
            self.bus_factory,
            self.settings.updates_queue,
            self.handle,
            shutdown_event,
            max_backoff=self.settings.bus_reconnect_max_seconds,
        )
