"""
Publish a fake CRM status update for one order.

    python -m bookstore.tools.publish_test_update 42 --status Completed

Handy for exercising the status-update consumer without a CRM: the message
looks exactly like one the poller would publish.
"""

import argparse
import asyncio
import logging
import sys

from ..common.bus import BusFactory, bus_factory_for
from ..common.logs import configure_logging
from ..common.settings import Settings
from ..shop.publisher import OrderPublisher

logger = logging.getLogger(__name__)

TEST_SALESFORCE_ID = "00Dxxx0000"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish a test status update to the order-updates queue")
    parser.add_argument("order_id", type=int, nargs="?", default=1)
    parser.add_argument("--status", default="Completed")
    parser.add_argument("--customer", default="", help="customer name, logged only")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, bus_factory: BusFactory | None = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    bus_factory = bus_factory or bus_factory_for(settings.redis_url, settings.bus_connect_timeout_seconds)

    publisher = OrderPublisher(settings, bus_factory)
    published = asyncio.run(
        publisher.publish_status_update(
            args.order_id,
            args.status,
            description=f"Web Order #{args.order_id} from Salesforce",
            salesforce_id=TEST_SALESFORCE_ID,
        )
    )
    if not published:
        logger.error("Failed to publish test message for Order #%s", args.order_id)
        return 1
    logger.info("Test message for %s sent to '%s'", args.customer or "-", settings.updates_queue)
    return 0


if __name__ == "__main__":
    sys.exit(main())
