import asyncio
import json
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

from bookstore.common.bus import Delivery
from bookstore.common.crm import CrmClient
from bookstore.common.messages import OrderItemMessage, OrderMessage
from bookstore.relay.worker import CrmRelayWorker, map_order_to_task

INSTANCE = "https://acme.my.salesforce.example"
TASK_PATH = "/services/data/v58.0/sobjects/Task/"


def make_order(**overrides):
    fields = dict(
        id=42,
        order_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
        items=[
            OrderItemMessage(book_id=3, book_title="Dune", quantity=2, unit_price=Decimal("12.50")),
            OrderItemMessage(book_id=9, book_title="Emma", quantity=1, unit_price=Decimal("8.00")),
        ],
        total_amount=Decimal("33.00"),
        customer_email="ann@example.com",
    )
    fields.update(overrides)
    return OrderMessage(**fields)


def delivery_for(body: str) -> Delivery:
    return Delivery(queue="orders", body=body, raw=body, headers={"origin": "shop"})


class FakeCrm:
    """Token endpoint plus Task endpoint; the first issued token is already expired."""

    def __init__(self, token_status=200, task_status=201, expire_first_token=False):
        self.token_status = token_status
        self.task_status = task_status
        self.expire_first_token = expire_first_token
        self.tokens_issued = 0
        self.tasks = []
        self.task_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            self.tokens_issued += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.tokens_issued}", "instance_url": INSTANCE}
            )
        if request.url.path == TASK_PATH:
            self.task_calls += 1
            if self.expire_first_token and request.headers["Authorization"] == "Bearer token-1":
                return httpx.Response(401, json=[{"errorCode": "INVALID_SESSION_ID"}])
            if self.task_status >= 400:
                return httpx.Response(self.task_status, json=[{"errorCode": "REQUIRED_FIELD_MISSING"}])
            self.tasks.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "00T000000000001", "success": True})
        return httpx.Response(404)


def run_worker(settings, bus_factory, fake_crm, body):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake_crm)) as http:
            worker = CrmRelayWorker(settings, CrmClient(settings, http), bus_factory)
            await worker.handle(delivery_for(body))
            return worker

    return asyncio.run(go())


def test_task_mapping_describes_first_item_only():
    task = map_order_to_task(make_order(), today=date(2024, 5, 2))

    assert task["Subject"] == "New Web Order from ann@example.com"
    assert task["Status"] == "Not Started"
    assert task["Priority"] == "Normal"
    assert task["ActivityDate"] == "2024-05-02"
    assert task["Description"].splitlines() == [
        "Web Order #42",
        "Customer: ann@example.com",
        "Total Amount: 33.00",
        "Book ID: 3",
        "Quantity: 2",
    ]


def test_task_mapping_without_items():
    task = map_order_to_task(make_order(items=[]), today=date(2024, 5, 2))
    assert "Book ID: 0" in task["Description"]


def test_order_is_pushed(settings, bus_factory):
    crm = FakeCrm()

    worker = run_worker(settings, bus_factory, crm, make_order().to_json())

    assert crm.tokens_issued == 1
    assert len(crm.tasks) == 1
    assert crm.tasks[0]["Subject"] == "New Web Order from ann@example.com"
    assert worker.health() == {"received": 1, "pushed": 1, "failed": 0, "dead_lettered": 0}


def test_expired_token_is_refreshed_and_retried_once(settings, bus_factory):
    crm = FakeCrm(expire_first_token=True)

    worker = run_worker(settings, bus_factory, crm, make_order().to_json())

    assert crm.tokens_issued == 2
    assert crm.task_calls == 2
    assert len(crm.tasks) == 1
    assert worker.stats.pushed == 1


def test_terminal_failure_is_dropped_by_default(settings, bus_factory, on_bus):
    crm = FakeCrm(task_status=400)

    worker = run_worker(settings, bus_factory, crm, make_order().to_json())

    assert worker.stats.failed == 1
    assert worker.stats.dead_lettered == 0
    assert on_bus(lambda bus: bus.message_count("orders-dlq")) == 0


@pytest.mark.parametrize(
    "crm, reason",
    [
        (FakeCrm(task_status=400), "crm_rejected"),
        (FakeCrm(token_status=400), "crm_auth_failed"),
    ],
)
def test_terminal_failure_is_dead_lettered_when_enabled(settings, bus_factory, on_bus, crm, reason):
    settings = settings.model_copy(update={"relay_dead_letter": True})
    body = make_order().to_json()

    worker = run_worker(settings, bus_factory, crm, body)

    delivery = on_bus(lambda bus: bus.get("orders-dlq"))
    assert delivery.body == body
    assert delivery.persistent is True
    assert delivery.headers["x-dlq-reason"] == reason
    assert delivery.headers["x-correlation-id"]
    assert delivery.headers["origin"] == "shop"
    assert worker.stats.dead_lettered == 1
    assert on_bus(lambda bus: bus.declare_queue("orders-dlq")).durable is True


def test_unreadable_message_never_reaches_crm(settings, bus_factory):
    crm = FakeCrm()

    worker = run_worker(settings, bus_factory, crm, "not json")

    assert crm.tokens_issued == 0
    assert worker.stats.failed == 1


def test_password_grant_tried_before_client_credentials(settings):
    settings = settings.model_copy(
        update={"crm_username": "api@acme", "crm_password": "pw", "crm_security_token": "TOK"}
    )
    grants = []

    def handler(request):
        form = dict(httpx.QueryParams(request.content.decode()))
        grants.append((form["grant_type"], form.get("password")))
        if form["grant_type"] == "client_credentials":
            return httpx.Response(200, json={"access_token": "t", "instance_url": INSTANCE + "/"})
        return httpx.Response(400, json={"error": "invalid_grant"})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            crm = CrmClient(settings, http)
            await crm.authenticate()
            return crm

    crm = asyncio.run(go())
    assert grants == [("password", "pwTOK"), ("password", "pw"), ("client_credentials", None)]
    assert crm.instance_url == INSTANCE


def test_worker_consumes_queue_and_acks(settings, bus_factory, on_bus):
    crm = FakeCrm(task_status=500)

    async def go():
        async with bus_factory() as bus:
            await bus.publish("orders", make_order().to_json())
        async with httpx.AsyncClient(transport=httpx.MockTransport(crm)) as http:
            worker = CrmRelayWorker(settings, CrmClient(settings, http), bus_factory)
            stop = asyncio.Event()
            task = asyncio.create_task(worker.run(stop))
            for _ in range(100):
                if worker.stats.received:
                    break
                await asyncio.sleep(0.05)
            stop.set()
            await asyncio.wait_for(task, timeout=5)
            return worker

    worker = asyncio.run(go())
    assert worker.stats.received == 1
    assert worker.stats.failed == 1
    assert on_bus(lambda bus: bus.message_count("orders")) == 0


@pytest.mark.parametrize("token_body", ["<html>down</html>", ["access_token", "t"]])
def test_unusable_token_response_is_an_auth_failure(settings, bus_factory, on_bus, token_body):
    settings = settings.model_copy(update={"relay_dead_letter": True})

    def handler(request):
        if isinstance(token_body, str):
            return httpx.Response(200, text=token_body)
        return httpx.Response(200, json=token_body)

    worker = run_worker(settings, bus_factory, handler, make_order().to_json())

    assert worker.stats.failed == 1
    assert on_bus(lambda bus: bus.get("orders-dlq")).headers["x-dlq-reason"] == "crm_auth_failed"
