import asyncio
from contextlib import asynccontextmanager

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from bookstore.common.bus import MessageBus
from bookstore.common.errors import ConnectFailure
from bookstore.common.settings import Settings

ADMIN_KEY = "s3cret-admin-key"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}",
        admin_api_key=ADMIN_KEY,
        status_consumer_enabled=False,
        bus_reconnect_max_seconds=0.1,
        crm_auth_url="https://login.example.com/services/oauth2/token",
        crm_client_id="client",
        crm_client_secret="secret",
    )


@pytest.fixture
def redis_server():
    return FakeServer()


@pytest.fixture
def bus_factory(redis_server):
    """A fresh fake-Redis connection per call, all sharing one server."""

    @asynccontextmanager
    async def factory():
        bus = MessageBus(FakeAsyncRedis(server=redis_server, decode_responses=True))
        try:
            yield bus
        finally:
            await bus.close()

    return factory


@pytest.fixture
def unreachable_bus():
    @asynccontextmanager
    async def factory():
        raise ConnectFailure("Broker unreachable while connecting: connection refused")
        yield

    return factory


@pytest.fixture
def on_bus(bus_factory):
    """Run ``fn(bus)`` against the shared fake broker from synchronous test code."""

    def run(fn):
        async def go():
            async with bus_factory() as bus:
                return await fn(bus)

        return asyncio.run(go())

    return run
