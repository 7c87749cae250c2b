"""Tests for the broker websocket client."""
from __future__ import annotations

import asyncio

import pytest

from pinq.core.errors import ConnectTimeout, JoinTimeout, RoomFull, RoomNotFound
from pinq.schemas.broker import Role
from pinq.services.events import EventKind
from pinq.services.signaling import SignalingClient

URL = "ws://broker.test/ws"


class SilentTransport:
    """Accepts frames and never answers."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self._closed = asyncio.Event()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self._closed.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        await self._closed.wait()
        return
        yield  # pragma: no cover


@pytest.mark.asyncio
async def test_join_reports_existing_peers(broker):
    async with SignalingClient(URL, connector=broker.connect) as creator, SignalingClient(URL, connector=broker.connect) as guest:
        created = await creator.join("abc234", Role.CREATOR)
        joined = await guest.join("ABC234", Role.GUEST)

        assert created.code == "ABC234"
        assert created.peers == []
        assert joined.peers == [creator.connection_id]
        assert guest.joined_codes == ["ABC234"]


@pytest.mark.asyncio
async def test_join_failures_map_to_errors(broker):
    async with SignalingClient(URL, connector=broker.connect) as first, SignalingClient(URL, connector=broker.connect) as second, SignalingClient(URL, connector=broker.connect) as third:
        with pytest.raises(RoomNotFound):
            await first.join("ZZZ999", Role.GUEST)

        await first.join("ABC234", Role.CREATOR)
        await second.join("ABC234", Role.GUEST)
        with pytest.raises(RoomFull) as excinfo:
            await third.join("ABC234", Role.GUEST)

    assert excinfo.value.code == "ABC234"
    assert excinfo.value.phase == "setup"


@pytest.mark.asyncio
async def test_events_are_delivered_for_joined_codes(broker):
    async with SignalingClient(URL, connector=broker.connect) as creator, SignalingClient(URL, connector=broker.connect) as guest:
        events = creator.subscribe()
        await creator.join("ABC234", Role.CREATOR)
        await guest.join("ABC234", Role.GUEST)
        await guest.send_signal("abc234", {"type": "answer"})

        joined = await asyncio.wait_for(events.get(), 1)
        signal = await asyncio.wait_for(events.get(), 1)

        assert joined.kind is EventKind.PEER_JOINED
        assert joined.peer_id == guest.connection_id
        assert signal.kind is EventKind.SIGNAL
        assert signal.payload == {"type": "answer"}
        assert signal.code == "ABC234"

        await guest.disconnect()
        left = await asyncio.wait_for(events.get(), 1)
        assert left.kind is EventKind.PEER_DISCONNECTED


@pytest.mark.asyncio
async def test_subscription_filters_by_kind(broker):
    async with SignalingClient(URL, connector=broker.connect) as creator, SignalingClient(URL, connector=broker.connect) as guest:
        signals = creator.subscribe([EventKind.SIGNAL])
        await creator.join("ABC234", Role.CREATOR)
        await guest.join("ABC234", Role.GUEST)
        await guest.send_signal("ABC234", {"type": "answer"})

        event = await asyncio.wait_for(signals.get(), 1)
        assert event.kind is EventKind.SIGNAL
        assert signals.empty()


@pytest.mark.asyncio
async def test_no_dispatch_for_codes_not_joined(broker):
    async with SignalingClient(URL, connector=broker.connect) as client:
        events = client.subscribe()
        await client.join("ABC234", Role.CREATOR)

        client._handle({"type": "signal", "code": "OTHER2", "signal": {}, "from": "x"})

        assert events.empty()


@pytest.mark.asyncio
async def test_no_dispatch_after_disconnect(broker):
    client = SignalingClient(URL, connector=broker.connect)
    events = client.subscribe()
    await client.join("ABC234", Role.CREATOR)

    await client.disconnect()
    client._handle({"type": "peer-joined", "peerId": "late", "code": "ABC234"})
    client._handle({"type": "room-expired", "code": "ABC234"})

    assert events.empty()
    assert not client.connected
    assert broker.registry.room_count() == 0


@pytest.mark.asyncio
async def test_connect_gives_up_with_connect_timeout(broker):
    broker.refuse = True
    client = SignalingClient(URL, connector=broker.connect, reconnection_attempts=2)

    with pytest.raises(ConnectTimeout):
        await client.connect(timeout=0.3)

    await client.disconnect()


@pytest.mark.asyncio
async def test_join_times_out_without_answer():
    transport = SilentTransport()

    async def connector(url: str, timeout: float):
        return transport

    async with SignalingClient(URL, connector=connector) as client:
        with pytest.raises(JoinTimeout):
            await client.join("ABC234", Role.CREATOR, timeout=0.1)

    assert '"join-room"' in transport.sent[0]


@pytest.mark.asyncio
async def test_lost_transport_rejoins_rooms(broker):
    async with SignalingClient(URL, connector=broker.connect, timeout=1) as client:
        await client.join("ABC234", Role.CREATOR)
        first = broker.transports[0]

        await first.drop()
        for _ in range(50):
            if len(broker.transports) == 2 and client.joined_codes == ["ABC234"]:
                break
            await asyncio.sleep(0.01)

        assert len(broker.transports) == 2
        room = broker.registry.get_room("ABC234")
        # the first transport leaving destroyed the room; the creator re-opened it
        assert list(room.members) == [broker.transports[1].connection.connection_id]


@pytest.mark.asyncio
async def test_unrecoverable_transport_loss_is_reported(broker):
    async with SignalingClient(URL, connector=broker.connect, timeout=0.2, reconnection_attempts=1) as client:
        events = client.subscribe()
        await client.join("ABC234", Role.CREATOR)

        broker.refuse = True
        await broker.transports[0].drop()

        event = await asyncio.wait_for(events.get(), 2)
        assert event.kind is EventKind.TRANSPORT_LOST
        assert event.code == "ABC234"
        assert client.joined_codes == []


@pytest.mark.asyncio
async def test_prewarm_failure_is_not_fatal():
    client = SignalingClient(URL, http_url="http://127.0.0.1:9")

    assert await client.prewarm(timeout=1) is False
