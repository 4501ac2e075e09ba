"""
CRM Relay Service — FastAPI entry point

No business endpoints: the service exists to run the order-queue consumer in
the background. ``/health`` reports what the worker has done so far.

┌──────────┐   orders    ┌──────────────┐   Task    ┌─────┐
│   Shop   │ ── Redis ─▶ │  CRM Relay   │ ───────▶  │ CRM │
└──────────┘             └──────────────┘           └─────┘
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from ..common.bus import BusFactory, bus_factory_for, stop_background
from ..common.crm import CrmClient
from ..common.logs import configure_logging
from ..common.settings import Settings
from .worker import CrmRelayWorker


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
        """Start the relay worker as a background task; stop it on shutdown."""
        client = http or httpx.AsyncClient(timeout=settings.crm_timeout_seconds)
        worker = CrmRelayWorker(settings, CrmClient(settings, client), bus_factory)
        app.state.worker = worker
        shutdown_event = asyncio.Event()
        worker_task = asyncio.create_task(worker.run(shutdown_event))
        yield
        await stop_background(worker_task, shutdown_event, settings.shutdown_grace_seconds)
        if http is None:
            await client.aclose()

    app = FastAPI(title="CRM Relay Service", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "crm-relay", "worker": app.state.worker.health()}

    return app


app = create_app()
