"""
CRM Poller — CRM → order-updates

Every ``POLL_INTERVAL_SECONDS`` asks the CRM for Task records modified since
the watermark and republishes each one as a status update.

The watermark moves forward once per successful query, not per record. A
record whose publish fails is therefore not fetched again on the next tick:
delivery of CRM changes is at-most-once.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from ..common.bus import BusFactory, sleep_or_shutdown
from ..common.crm import CrmClient, CrmRecord
from ..common.errors import IntegrationError
from ..common.messages import StatusUpdate
from ..common.settings import Settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrmPoller:
    def __init__(
        self,
        settings: Settings,
        crm: CrmClient,
        bus_factory: BusFactory,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.crm = crm
        self.bus_factory = bus_factory
        self.clock = clock
        self.watermark = clock() - timedelta(minutes=settings.poll_lookback_minutes)
        self.last_poll_at: datetime | None = None
        self.last_error: str | None = None
        self.published = 0

    async def poll_once(self) -> int:
        """One tick: query, advance the watermark, publish. Returns the number published."""
        started = self.clock()
        logger.info("Checking CRM for updates since %s...", self.watermark.isoformat())
        try:
            records = await self.crm.modified_since(self.watermark)
        except IntegrationError as exc:
            self.last_error = str(exc)
            logger.error("Error polling CRM: %s", exc)
            return 0

        self.watermark = started
        self.last_poll_at = started
        self.last_error = None
        if not records:
            logger.info("No modified orders found.")
            return 0

        logger.info("Found %d modified orders.", len(records))
        published = await self._publish(records)
        self.published += published
        return published

    async def _publish(self, records: list[CrmRecord]) -> int:
        queue = self.settings.updates_queue
        published = 0
        try:
            async with self.bus_factory() as bus:
                await bus.declare_queue(queue, durable=False)
                for record in records:
                    if not record.status:
                        logger.warning("Skipping CRM record %s without a status", record.id)
                        continue
                    update = StatusUpdate(
                        salesforce_id=record.id,
                        status=record.status,
                        description=record.description,
                        updated_at=self.clock(),
                    )
                    try:
                        await bus.publish(queue, update.to_json())
                    except IntegrationError:
                        logger.exception("Failed to publish update for %s", record.id)
                        continue
                    published += 1
                    logger.info("Published update for %s [%s] to '%s'", record.id, record.status, queue)
        except IntegrationError:
            logger.exception("Lost %d CRM updates: broker unavailable", len(records) - published)
        return published

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info("CRM polling service starting...")
        while not shutdown_event.is_set():
            try:
                await self.poll_once()
            except Exception as exc:
                self.last_error = str(exc) or type(exc).__name__
                logger.exception("Unexpected error polling CRM")
            if await sleep_or_shutdown(shutdown_event, self.settings.poll_interval_seconds):
                break
        logger.info("CRM polling service stopped")

    def health(self) -> dict:
        return {
            "watermark": self.watermark.isoformat(),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "last_error": self.last_error,
            "published": self.published,
        }
