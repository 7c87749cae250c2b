"""Tests for the in-process loopback channel."""
from __future__ import annotations

import asyncio

import pytest

from pinq.channels import ChannelRole, LoopbackNetwork
from pinq.core.errors import ChannelClosedError
from pinq.services.events import EventKind


async def _connected_pair(network: LoopbackNetwork):
    async def to_responder(payload: dict) -> None:
        await responder.signal(payload)

    async def to_initiator(payload: dict) -> None:
        await initiator.signal(payload)

    initiator = network.factory(ChannelRole.INITIATOR, to_responder)
    responder = network.factory(ChannelRole.RESPONDER, to_initiator)
    await responder.open()
    await initiator.open()
    assert (await initiator.next_event()).kind is EventKind.CHANNEL_CONNECT
    assert (await responder.next_event()).kind is EventKind.CHANNEL_CONNECT
    return initiator, responder


@pytest.mark.asyncio
async def test_sender_blocks_at_high_water_mark():
    network = LoopbackNetwork(high_water=2)
    initiator, responder = await _connected_pair(network)

    await initiator.send(b"one")
    await initiator.send(b"two")
    blocked = asyncio.create_task(initiator.send(b"three"))
    await asyncio.sleep(0.01)
    assert not blocked.done()

    assert (await responder.next_event()).payload == b"one"
    await asyncio.wait_for(blocked, 1)
    assert [(await responder.next_event()).payload for _ in range(2)] == [b"two", b"three"]


@pytest.mark.asyncio
async def test_close_releases_blocked_writer_and_notifies_peer():
    network = LoopbackNetwork(high_water=1)
    initiator, responder = await _connected_pair(network)
    await initiator.send(b"fill")
    blocked = asyncio.create_task(initiator.send(b"stuck"))
    await asyncio.sleep(0.01)

    await responder.close()

    with pytest.raises(ChannelClosedError):
        await asyncio.wait_for(blocked, 1)
    assert (await initiator.next_event()).kind is EventKind.CHANNEL_CLOSE


@pytest.mark.asyncio
async def test_offer_for_unknown_endpoint_is_an_error():
    network = LoopbackNetwork()

    async def ignore(payload: dict) -> None:
        return None

    responder = network.factory(ChannelRole.RESPONDER, ignore)
    await responder.signal({"type": "offer", "endpoint": "missing"})

    event = await responder.next_event()
    assert event.kind is EventKind.CHANNEL_ERROR
