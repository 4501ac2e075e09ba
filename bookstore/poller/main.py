"""
CRM Poller Service — FastAPI entry point

Runs the polling loop in the background and exposes its watermark on
``/health``.

┌─────┐  modified since   ┌────────────┐  order-updates  ┌──────┐
│ CRM │ ◀──────────────── │ CRM Poller │ ─── Redis ────▶ │ Shop │
└─────┘                   └────────────┘                 └──────┘
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from ..common.bus import BusFactory, bus_factory_for, stop_background
from ..common.crm import CrmClient
from ..common.logs import configure_logging
from ..common.settings import Settings
from .poller import CrmPoller


def create_app(
    settings: Settings | None = None,
    bus_factory: BusFactory | None = None,
    http: httpx.AsyncClient | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    bus_factory = bus_factory or bus_factory_for(settings.redis_url, settings.bus_connect_timeout_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = http or httpx.AsyncClient(timeout=settings.crm_timeout_seconds)
        poller = CrmPoller(settings, CrmClient(settings, client), bus_factory)
        app.state.poller = poller
        shutdown_event = asyncio.Event()
        poller_task = asyncio.create_task(poller.run(shutdown_event))
        yield
        await stop_background(poller_task, shutdown_event, settings.shutdown_grace_seconds)
        if http is None:
            await client.aclose()

    app = FastAPI(title="CRM Poller Service", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "crm-poller", "poller": app.state.poller.health()}

    return app


app = create_app()
