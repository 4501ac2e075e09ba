import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bookstore.common.crm import CrmClient, soql_timestamp
from bookstore.poller.poller import CrmPoller

INSTANCE = "https://acme.my.salesforce.example"
QUERY_PATH = "/services/data/v58.0/query"
NEXT_PAGE = "/services/data/v58.0/query/01gD0000002HU6KIAW-2000"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCrm:
    def __init__(self, query_status=200, pages=None):
        self.query_status = query_status
        self.pages = pages or []
        self.queries = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/token"):
            return httpx.Response(200, json={"access_token": "t", "instance_url": INSTANCE})
        if request.url.path == QUERY_PATH:
            self.queries.append(request.url.params.get("q"))
            if self.query_status != 200:
                return httpx.Response(self.query_status, json=[{"errorCode": "SERVER_ERROR"}])
            return httpx.Response(200, json=self.pages[0])
        if request.url.path == NEXT_PAGE:
            return httpx.Response(200, json=self.pages[1])
        return httpx.Response(404)


def poll(settings, bus_factory, crm, ticks=1):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(crm)) as http:
            poller = CrmPoller(settings, CrmClient(settings, http), bus_factory, clock=lambda: NOW)
            results = [await poller.poll_once() for _ in range(ticks)]
            return poller, results

    return asyncio.run(go())


def test_soql_timestamp_is_utc():
    moment = datetime(2024, 5, 1, 14, 30, 5, tzinfo=timezone(timedelta(hours=2)))
    assert soql_timestamp(moment) == "2024-05-01T12:30:05Z"


def test_modified_records_are_published_and_watermark_advances(settings, bus_factory, on_bus):
    crm = FakeCrm(
        pages=[
            {
                "done": False,
                "nextRecordsUrl": NEXT_PAGE,
                "records": [{"Id": "00T1", "Status": "Completed", "Description": "Web Order #42"}],
            },
            {
                "done": True,
                "records": [
                    {"Id": "00T2", "Status": "In Progress", "Description": "Web Order #43"},
                    {"Id": "00T3", "Status": None, "Description": "Web Order #44"},
                ],
            },
        ]
    )

    poller, results = poll(settings, bus_factory, crm)

    assert results == [2]
    assert poller.watermark == NOW
    assert "LastModifiedDate > 2024-05-01T11:55:00Z" in crm.queries[0]

    async def drain(bus):
        bodies = []
        while (delivery := await bus.get("order-updates")) is not None:
            bodies.append(json.loads(delivery.body))
        return bodies

    bodies = on_bus(drain)
    assert [(b["SalesforceId"], b["Status"], b["Description"]) for b in bodies] == [
        ("00T1", "Completed", "Web Order #42"),
        ("00T2", "In Progress", "Web Order #43"),
    ]


def test_failed_query_keeps_watermark(settings, bus_factory, on_bus):
    crm = FakeCrm(query_status=500)

    poller, results = poll(settings, bus_factory, crm, ticks=2)

    assert results == [0, 0]
    assert poller.watermark == NOW - timedelta(minutes=5)
    assert poller.last_error
    assert crm.queries[0] == crm.queries[1]
    assert on_bus(lambda bus: bus.message_count("order-updates")) == 0


class MaintenancePage(FakeCrm):
    """Query endpoint answers 200 with something that is not a result page."""

    def __init__(self, body):
        super().__init__()
        self.body = body

    def __call__(self, request):
        if request.url.path == QUERY_PATH:
            self.queries.append(request.url.params.get("q"))
            if isinstance(self.body, str):
                return httpx.Response(200, text=self.body)
            return httpx.Response(200, json=self.body)
        return super().__call__(request)


@pytest.mark.parametrize(
    "body",
    [
        "<html>Service Unavailable</html>",
        ["not", "an", "object"],
        {"done": True, "records": ["00T1"]},
    ],
)
def test_unusable_query_response_keeps_watermark(settings, bus_factory, body):
    crm = MaintenancePage(body)

    poller, results = poll(settings, bus_factory, crm)

    assert results == [0]
    assert poller.watermark == NOW - timedelta(minutes=5)
    assert "Unusable query response" in poller.last_error


def test_loop_survives_unusable_responses(settings, bus_factory):
    settings = settings.model_copy(update={"poll_interval_seconds": 0.05})
    crm = MaintenancePage("<html>Service Unavailable</html>")

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(crm)) as http:
            poller = CrmPoller(settings, CrmClient(settings, http), bus_factory)
            stop = asyncio.Event()
            task = asyncio.create_task(poller.run(stop))
            await asyncio.sleep(0.4)
            alive = not task.done()
            stop.set()
            await asyncio.wait_for(task, timeout=2)
            return alive

    assert asyncio.run(go()) is True
    assert len(crm.queries) >= 3


def test_loop_survives_unexpected_errors(settings, bus_factory):
    settings = settings.model_copy(update={"poll_interval_seconds": 0.05})
    calls = []

    class Exploding(CrmPoller):
        async def poll_once(self):
            calls.append(1)
            raise KeyError("boom")

    async def go():
        poller = Exploding(settings, None, bus_factory)
        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.3)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        return poller

    poller = asyncio.run(go())
    assert len(calls) >= 3
    assert "boom" in poller.last_error


def test_unreachable_broker_loses_the_batch(settings, unreachable_bus):
    crm = FakeCrm(pages=[{"done": True, "records": [{"Id": "00T1", "Status": "Completed"}]}])

    poller, results = poll(settings, unreachable_bus, crm)

    assert results == [0]
    assert poller.watermark == NOW


def test_run_stops_on_shutdown(settings, bus_factory):
    crm = FakeCrm(pages=[{"done": True, "records": []}])

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(crm)) as http:
            poller = CrmPoller(settings, CrmClient(settings, http), bus_factory)
            stop = asyncio.Event()
            task = asyncio.create_task(poller.run(stop))
            await asyncio.sleep(0.2)
            stop.set()
            await asyncio.wait_for(task, timeout=2)
            return poller

    poller = asyncio.run(go())
    assert len(crm.queries) == 1
    assert poller.health()["last_error"] is None
