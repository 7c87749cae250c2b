"""Abstract direct peer channel consumed by transfer sessions."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable

from ..services.events import EventKind, SessionEvent

SignalCallback = Callable[[dict], Awaitable[None]]

HIGH_WATER_MARK = 64


class ChannelRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class PeerChannel(ABC):
    """Bidirectional, ordered, message-oriented channel between two devices.

    Handshake payloads produced by the channel are handed to ``on_signal`` for the
    broker to relay; payloads from the other side are fed back through ``signal``.
    Inbound activity is exposed as connect/data/close/error events via
    ``next_event``. Writers block in ``wait_writable`` while the peer has more
    than ``high_water`` undelivered messages.
    """

    def __init__(self, role: ChannelRole, on_signal: SignalCallback, *, high_water: int = HIGH_WATER_MARK) -> None:
        self.role = role
        self._on_signal = on_signal
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._writable = asyncio.Event()
        self._writable.set()
        self._high_water = high_water
        self._closed = False
        self.connected = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Start the handshake; initiators emit their offer here."""

    @abstractmethod
    async def signal(self, payload: dict) -> None:
        """Feed a handshake payload relayed from the other side."""

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send one message, waiting for the transport to accept it."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the channel down."""

    async def next_event(self) -> SessionEvent:
        event = await self._events.get()
        if self._events.qsize() < self._high_water:
            self._writable.set()
        return event

    async def wait_writable(self) -> None:
        await self._writable.wait()

    def _emit(self, kind: EventKind, payload: Any = None, error: BaseException | None = None) -> None:
        if kind is EventKind.CHANNEL_CONNECT:
            self.connected = True
        self._events.put_nowait(SessionEvent(kind, payload=payload, error=error, source=self))
        if kind is EventKind.CHANNEL_DATA and self._events.qsize() >= self._high_water:
            self._writable.clear()

    def _release_writers(self) -> None:
        self._writable.set()


ChannelFactory = Callable[[ChannelRole, SignalCallback], PeerChannel]
