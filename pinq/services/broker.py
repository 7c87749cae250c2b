"""In-memory pairing room registry.

Rooms hold at most two connections. Every mutation runs under one asyncio lock so
joins, signal renewals, disconnects and expiries on the same code are linearised;
outbound messages are sent after the lock is released.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable

from ..core.config import settings
from ..core.errors import RoomFull, RoomNotFound
from ..schemas.broker import Role

SendCallable = Callable[[dict], Awaitable[None]]
SleepCallable = Callable[[float], Awaitable[Any]]

MAX_MEMBERS = 2

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BrokerConnection:
    """A broker socket as seen by the registry."""

    connection_id: str
    send: SendCallable


@dataclass
class Room:
    code: str
    members: Dict[str, BrokerConnection] = field(default_factory=dict)
    expires_at: float = 0.0
    timer: asyncio.Task[None] | None = None

    def others(self, connection_id: str) -> list[BrokerConnection]:
        return [conn for conn_id, conn in self.members.items() if conn_id != connection_id]


class RoomRegistry:
    """Manage pairing rooms, relay signals and reap idle rooms."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        *,
        sleep: SleepCallable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = settings.room_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._sleep = sleep
        self._clock = clock
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def get_room(self, code: str) -> Room | None:
        return self._rooms.get(code)

    def room_count(self) -> int:
        return len(self._rooms)

    async def join(self, code: str, role: Role, connection: BrokerConnection) -> list[str]:
        """Add a connection to the room for ``code`` and return the other member IDs.

        A creator opens the room when it does not exist yet; a guest may only join an
        existing room. A connection that is already a member is re-acknowledged
        without announcing it to the peer a second time.
        """

        async with self._lock:
            room = self._rooms.get(code)
            rejoin = room is not None and connection.connection_id in room.members
            if room is not None and not rejoin and len(room.members) >= MAX_MEMBERS:
                raise RoomFull(code=code)
            if room is None:
                if role is not Role.CREATOR:
                    raise RoomNotFound(code=code)
                room = Room(code=code)
                self._rooms[code] = room
                logger.info("Room %s created by %s", code, connection.connection_id)

            room.members[connection.connection_id] = connection
            self._renew(room)
            others = room.others(connection.connection_id)

        peers = [peer.connection_id for peer in others]
        await self._deliver([connection], {"type": "room-joined", "code": code, "peers": peers})
        if others and not rejoin:
            await self._deliver(
                others,
                {"type": "peer-joined", "peerId": connection.connection_id, "code": code},
            )
        return peers

    async def signal(self, code: str, sender_id: str, payload: Any) -> int:
        """Relay an opaque handshake payload to the other member of the room."""

        async with self._lock:
            room = self._rooms.get(code)
            # only members may relay into (and keep alive) a room
            if room is None or sender_id not in room.members:
                raise RoomNotFound(code=code)
            targets = room.others(sender_id)
            self._renew(room)

        await self._deliver(targets, {"type": "signal", "code": code, "signal": payload, "from": sender_id})
        return len(targets)

    async def disconnect(self, connection_id: str) -> None:
        """Remove a connection from every room it belongs to."""

        notices: list[tuple[list[BrokerConnection], dict]] = []
        async with self._lock:
            for code, room in list(self._rooms.items()):
                if connection_id not in room.members:
                    continue
                room.members.pop(connection_id)
                remaining = list(room.members.values())
                if remaining:
                    self._renew(room)
                    notices.append(
                        (remaining, {"type": "peer-disconnected", "peerId": connection_id, "code": code})
                    )
                else:
                    self._destroy(room)
                logger.info("Connection %s left room %s (%d remaining)", connection_id, code, len(remaining))

        for targets, message in notices:
            await self._deliver(targets, message)

    async def shutdown(self) -> None:
        """Cancel every pending expiry timer and drop all rooms."""

        async with self._lock:
            timers = [room.timer for room in self._rooms.values() if room.timer is not None]
            for room in list(self._rooms.values()):
                self._destroy(room)

        for timer in timers:
            with suppress(asyncio.CancelledError):
                await timer

    def _renew(self, room: Room) -> None:
        self._cancel_timer(room)
        room.expires_at = self._clock() + self._ttl
        room.timer = asyncio.create_task(self._expire_after(room))

    def _destroy(self, room: Room) -> None:
        self._cancel_timer(room)
        if self._rooms.get(room.code) is room:
            del self._rooms[room.code]

    @staticmethod
    def _cancel_timer(room: Room) -> None:
        timer, room.timer = room.timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire_after(self, room: Room) -> None:
        await self._sleep(self._ttl)
        async with self._lock:
            if self._rooms.get(room.code) is not room or room.timer is not asyncio.current_task():
                return
            members = list(room.members.values())
            room.members.clear()
            self._destroy(room)

        logger.info("Room %s expired after %.0fs of inactivity", room.code, self._ttl)
        await self._deliver(members, {"type": "room-expired", "code": room.code})

    @staticmethod
    async def _deliver(targets: Iterable[BrokerConnection], message: dict) -> None:
        tasks = [connection.send(message) for connection in targets]
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.debug("Dropping %s for a closed connection: %s", message.get("type"), result)
