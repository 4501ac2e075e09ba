"""
Shop Service — order publisher

Fire-and-forget: an order that has been committed is offered once to the
``orders`` queue. Every broker error is logged and swallowed, so the caller
sees success whether or not the message got out. There is no retry and no
delivery confirmation.
"""

import logging
from datetime import datetime, timezone

from ..common.bus import BusFactory
from ..common.messages import OrderMessage, StatusUpdate
from ..common.settings import Settings

logger = logging.getLogger(__name__)


class OrderPublisher:
    def __init__(self, settings: Settings, bus_factory: BusFactory) -> None:
        self.settings = settings
        self.bus_factory = bus_factory

    async def publish_order(self, order: dict) -> bool:
        """Publish an order snapshot. Returns False (after logging) instead of raising."""
        queue = self.settings.orders_queue
        try:
            message = OrderMessage.model_validate(order)
            async with self.bus_factory() as bus:
                await bus.declare_queue(queue, durable=False)
                await bus.publish(queue, message.to_json())
        except Exception:
            logger.exception("Failed to publish Order #%s to '%s'", order.get("id"), queue)
            return False
        logger.info("Successfully published order to queue '%s': Order ID %s", queue, order["id"])
        return True

    async def publish_status_update(
        self,
        order_id: int,
        status: str,
        description: str | None = None,
        salesforce_id: str | None = None,
    ) -> bool:
        """Publish a status change for an order onto the update queue, same error policy."""
        queue = self.settings.updates_queue
        update = StatusUpdate(
            order_id=order_id,
            status=status,
            description=description or f"Web Order #{order_id}",
            salesforce_id=salesforce_id,
            updated_at=datetime.now(timezone.utc),
        )
        try:
            async with self.bus_factory() as bus:
                await bus.declare_queue(queue, durable=False)
                await bus.publish(queue, update.to_json())
        except Exception:
            logger.exception("Failed to publish status update for Order #%s", order_id)
            return False
        logger.info("Published status update for Order #%s -> %s to '%s'", order_id, status, queue)
        return True
