"""Shared fakes: an in-process broker transport and a manually advanced timer."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from pinq.core.config import Settings
from pinq.routers.broker import handle_message
from pinq.services.broker import BrokerConnection, RoomRegistry

_CLOSED = object()


class ManualTimer:
    """Drop-in for ``asyncio.sleep``/``time.monotonic`` that only moves when told to."""

    def __init__(self) -> None:
        self.now = 0.0
        self._sleepers: list[tuple[float, asyncio.Future]] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + delay, future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def _settle(self) -> None:
        for _ in range(10):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        # let freshly created timer tasks register before time moves
        await self._settle()
        self.now += seconds
        due = [future for deadline, future in self._sleepers if deadline <= self.now]
        self._sleepers = [(deadline, future) for deadline, future in self._sleepers if deadline > self.now]
        for future in due:
            if not future.done():
                future.set_result(None)
        await self._settle()


class LocalBrokerTransport:
    """Signaling transport wired straight into a ``RoomRegistry``."""

    def __init__(self, broker: "LocalBroker", connection_id: str) -> None:
        self._broker = broker
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.connection = BrokerConnection(connection_id=connection_id, send=self._deliver)
        self.sent: list[dict] = []
        self.closed = False
        self._incoming.put_nowait(json.dumps({"type": "connected", "connectionId": connection_id}))

    async def _deliver(self, message: dict) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        self._incoming.put_nowait(json.dumps(message))

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        payload = json.loads(message)
        self.sent.append(payload)
        await handle_message(self._broker.registry, self.connection, payload)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._incoming.put_nowait(_CLOSED)
        await self._broker.registry.disconnect(self.connection.connection_id)

    async def drop(self) -> None:
        """Simulate the network going away underneath the client."""

        await self.close()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._incoming.get()
            if item is _CLOSED:
                return
            yield item


class LocalBroker:
    def __init__(self, registry: RoomRegistry) -> None:
        self.registry = registry
        self.transports: list[LocalBrokerTransport] = []
        self.refuse = False

    async def connect(self, url: str, timeout: float) -> LocalBrokerTransport:
        if self.refuse:
            raise OSError("connection refused")
        transport = LocalBrokerTransport(self, f"conn-{len(self.transports) + 1}")
        self.transports.append(transport)
        return transport


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest_asyncio.fixture
async def broker_factory():
    created: list[LocalBroker] = []

    def make(ttl_seconds: float = 300) -> LocalBroker:
        local = LocalBroker(RoomRegistry(ttl_seconds=ttl_seconds))
        created.append(local)
        return local

    yield make
    for local in created:
        await local.registry.shutdown()


@pytest.fixture
def broker(broker_factory) -> LocalBroker:
    return broker_factory()


@pytest.fixture
def fast_settings(tmp_path: Path) -> Settings:
    return Settings(
        signaling_timeout=5,
        peer_timeout=5,
        offer_timeout=5,
        peer_connect_timeout=5,
        metadata_timeout=5,
        idle_timeout=5,
        ack_timeout=5,
        ack_linger=0.05,
        download_dir=tmp_path / "downloads",
    )
