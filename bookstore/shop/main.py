"""
Shop Service — FastAPI entry point

The web process of the bookstore. Besides the small book/customer/order API
it hosts three pieces of the integration pipeline:

  - the status-update consumer (background task, ``order-updates`` queue)
  - the live notification stream (SSE, fed by the consumer)
  - the dead-letter remediation API (``/api/dlq/*``, X-Api-Key protected)

┌──────────┐  POST /api/orders  ┌──────┐   orders    ┌───────────┐
│ Browser  │ ─────────────────▶ │ Shop │ ── Redis ─▶ │ CRM Relay │
│          │ ◀── SSE stream ─── │      │ ◀─ Redis ── │ CRM Poller│
└──────────┘                    └──────┘ order-updates└──────────┘
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..common.bus import BusFactory, bus_factory_for, stop_background
from ..common.errors import IntegrationError, NotFound, OutOfStock
from ..common.logs import configure_logging
from ..common.settings import Settings, dead_letter_name
from . import commands, dlq, queries
from .database import create_engine, create_session_factory, init_schema
from .notifications import NotificationHub, sse_frame
from .publisher import OrderPublisher
from .updates import StatusUpdateConsumer

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CreateBookRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    author: str = Field(min_length=1, max_length=200)
    isbn: str = Field(default="", max_length=50)
    price: Decimal = Field(ge=0, le=10000)
    stock: int = Field(default=0, ge=0)


class UpdateBookRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    author: str | None = Field(default=None, min_length=1, max_length=200)
    isbn: str | None = Field(default=None, max_length=50)
    price: Decimal | None = Field(default=None, ge=0, le=10000)
    stock: int | None = Field(default=None, ge=0)


class CreateCustomerRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: str = ""
    address: str = Field(default="", max_length=500)


class OrderLine(BaseModel):
    book_id: int
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    customer_id: int
    items: list[OrderLine] = Field(min_length=1)


# ── Dependencies ─────────────────────────────────


def require_admin_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    """DLQ operations need X-Api-Key equal to the configured admin key."""
    configured = request.app.state.settings.admin_api_key
    if not configured or not x_api_key:
        raise HTTPException(401, "API key required for DLQ operations")
    if not secrets.compare_digest(x_api_key.encode(), configured.encode()):
        raise HTTPException(401, "API key required for DLQ operations")


def create_app(settings: Settings | None = None, bus_factory: BusFactory | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    bus_factory = bus_factory or bus_factory_for(settings.redis_url, settings.bus_connect_timeout_seconds)

    engine = create_engine(settings.database_url)
    async_session = create_session_factory(engine)
    hub = NotificationHub(settings.notify_queue_size)
    publisher = OrderPublisher(settings, bus_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the schema and start the status-update consumer; tear both down on exit."""
        await init_schema(engine)
        shutdown_event = asyncio.Event()
        consumer_task = None
        if settings.status_consumer_enabled:
            consumer = StatusUpdateConsumer(settings, async_session, hub, bus_factory)
            consumer_task = asyncio.create_task(consumer.run(shutdown_event))
        yield
        hub.close()
        if consumer_task is not None:
            await stop_background(consumer_task, shutdown_event, settings.shutdown_grace_seconds)
        await engine.dispose()

    app = FastAPI(title="Bookstore Shop Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.bus_factory = bus_factory
    app.state.hub = hub

    @app.exception_handler(IntegrationError)
    async def integration_error(request: Request, exc: IntegrationError):
        logger.error("Broker error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    # ── Books / Customers ────────────────────────

    @app.post("/api/books", status_code=201)
    async def create_book(req: CreateBookRequest):
        async with async_session() as session:
            return await commands.create_book(session, req.model_dump())

    @app.get("/api/books")
    async def list_books():
        async with async_session() as session:
            return await queries.list_books(session)

    @app.get("/api/books/{book_id}")
    async def get_book(book_id: int):
        async with async_session() as session:
            book = await queries.get_book(session, book_id)
        if not book:
            raise HTTPException(404, "Book not found")
        return book

    @app.patch("/api/books/{book_id}")
    async def update_book(book_id: int, req: UpdateBookRequest):
        async with async_session() as session:
            try:
                return await commands.update_book(session, book_id, req.model_dump(exclude_none=True))
            except NotFound as exc:
                raise HTTPException(404, str(exc))

    @app.post("/api/customers", status_code=201)
    async def create_customer(req: CreateCustomerRequest):
        async with async_session() as session:
            return await commands.create_customer(session, req.model_dump())

    @app.get("/api/customers")
    async def list_customers():
        async with async_session() as session:
            return await queries.list_customers(session)

    # ── Orders ───────────────────────────────────

    @app.post("/api/orders", status_code=201)
    async def create_order(req: CreateOrderRequest, background_tasks: BackgroundTasks):
        """
        Place an order.

        The order is committed first; publishing to the ``orders`` queue
        runs after the response and cannot fail the request.
        """
        async with async_session() as session:
            try:
                order = await commands.create_order(
                    session, req.customer_id, [(line.book_id, line.quantity) for line in req.items]
                )
            except NotFound as exc:
                raise HTTPException(404, str(exc))
            except OutOfStock as exc:
                raise HTTPException(400, str(exc))
        logger.info("Order %s saved", order["id"])
        background_tasks.add_task(publisher.publish_order, order)
        return order

    @app.get("/api/orders")
    async def list_orders(
        page: int | None = Query(default=None, ge=1),
        page_size: int | None = Query(default=None, ge=1, le=500),
    ):
        async with async_session() as session:
            return await queries.list_orders(session, page, page_size)

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: int):
        async with async_session() as session:
            order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    # ── Live notifications ───────────────────────

    @app.get("/api/notifications/stream")
    async def notification_stream():
        """One ``data: {"orderId", "status"}`` frame per status change, until the client leaves."""
        subscription = hub.subscribe()

        async def frames():
            with subscription:
                async for message in subscription:
                    yield sse_frame(message)

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # ── Dead-letter remediation ──────────────────

    admin = [Depends(require_admin_key)]

    @app.get("/api/dlq/list", dependencies=admin)
    async def dlq_list(queue: str = "orders", count: int = Query(default=50, ge=0, le=1000)):
        async with bus_factory() as bus:
            messages = await dlq.list_messages(bus, queue, count)
        return {"queue": dead_letter_name(queue), "count": len(messages), "messages": messages}

    @app.get("/api/dlq/count", dependencies=admin)
    async def dlq_count(queue: str = "orders"):
        async with bus_factory() as bus:
            count = await dlq.count_messages(bus, queue)
        return {"queue": dead_letter_name(queue), "count": count}

    @app.post("/api/dlq/requeue-all", dependencies=admin)
    async def dlq_requeue_all(queue: str = "orders"):
        async with bus_factory() as bus:
            requeued = await dlq.requeue_all(bus, queue)
        return {"success": True, "requeued": requeued}

    @app.post("/api/dlq/requeue", dependencies=admin)
    async def dlq_requeue_one(queue: str = "orders", index: int = 0):
        async with bus_factory() as bus:
            requeued = await dlq.requeue_one(bus, queue, index)
        return {"success": True, "requeued": requeued}

    @app.post("/api/dlq/delete", dependencies=admin)
    async def dlq_delete_one(queue: str = "orders", index: int = 0):
        async with bus_factory() as bus:
            deleted = await dlq.delete_one(bus, queue, index)
        return {"success": True, "deleted": deleted}

    @app.post("/api/dlq/purge", dependencies=admin)
    async def dlq_purge(queue: str = "orders"):
        async with bus_factory() as bus:
            purged = await dlq.purge(bus, queue)
        return {"success": True, "purged": purged}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "shop-service",
            "notification_subscribers": hub.subscriber_count,
        }

    return app


app = create_app()
