"""In-process direct channel for local transfers and tests."""
from __future__ import annotations

import logging
from typing import Dict
from uuid import uuid4

from ..core.errors import ChannelClosedError
from ..services.events import EventKind
from .base import HIGH_WATER_MARK, ChannelRole, PeerChannel, SignalCallback

logger = logging.getLogger(__name__)


class LoopbackNetwork:
    """Registry letting two loopback endpoints in one process find each other."""

    def __init__(self, *, high_water: int = HIGH_WATER_MARK) -> None:
        self._endpoints: Dict[str, LoopbackChannel] = {}
        self._high_water = high_water
        self.channels: list[LoopbackChannel] = []

    def factory(self, role: ChannelRole, on_signal: SignalCallback) -> "LoopbackChannel":
        channel = LoopbackChannel(role, on_signal, network=self, high_water=self._high_water)
        self.channels.append(channel)
        return channel

    def register(self, channel: "LoopbackChannel") -> None:
        self._endpoints[channel.endpoint_id] = channel

    def unregister(self, channel: "LoopbackChannel") -> None:
        self._endpoints.pop(channel.endpoint_id, None)

    def lookup(self, endpoint_id: object) -> "LoopbackChannel | None":
        if not isinstance(endpoint_id, str):
            return None
        return self._endpoints.get(endpoint_id)


class LoopbackChannel(PeerChannel):
    """Channel whose offer/answer carry endpoint IDs instead of SDP."""

    def __init__(
        self,
        role: ChannelRole,
        on_signal: SignalCallback,
        *,
        network: LoopbackNetwork,
        high_water: int = HIGH_WATER_MARK,
    ) -> None:
        super().__init__(role, on_signal, high_water=high_water)
        self.endpoint_id = uuid4().hex
        self._network = network
        self._peer: LoopbackChannel | None = None
        self.sent: list[bytes | str] = []

    async def open(self) -> None:
        self._network.register(self)
        if self.role is ChannelRole.INITIATOR:
            await self._on_signal({"type": "offer", "endpoint": self.endpoint_id})

    async def signal(self, payload: dict) -> None:
        if self._closed or not isinstance(payload, dict):
            return
        kind = payload.get("type")
        if kind == "offer" and self.role is ChannelRole.RESPONDER and self._peer is None:
            initiator = self._network.lookup(payload.get("endpoint"))
            if initiator is None or initiator.closed:
                self._emit(EventKind.CHANNEL_ERROR, error=ConnectionError("Offer refers to an unknown endpoint"))
                return
            self._peer = initiator
            await self._on_signal({"type": "answer", "endpoint": self.endpoint_id})
            self._emit(EventKind.CHANNEL_CONNECT)
        elif kind == "answer" and self.role is ChannelRole.INITIATOR and self._peer is None:
            responder = self._network.lookup(payload.get("endpoint"))
            if responder is None or responder._peer is not self:
                logger.debug("Ignoring answer from a stale endpoint")
                return
            self._peer = responder
            self._emit(EventKind.CHANNEL_CONNECT)

    async def send(self, data: bytes | str) -> None:
        peer = self._peer
        if self._closed or peer is None or peer.closed:
            raise ChannelClosedError("Loopback channel is closed")
        await peer.wait_writable()
        if self._closed or peer.closed:
            raise ChannelClosedError("Loopback channel is closed")
        self.sent.append(data)
        peer._emit(EventKind.CHANNEL_DATA, payload=data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._network.unregister(self)
        self._release_writers()
        peer = self._peer
        if peer is not None and not peer.closed:
            peer._release_writers()
            peer._emit(EventKind.CHANNEL_CLOSE)
