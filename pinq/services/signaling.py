"""Websocket client for the pairing broker.

Broker pushes are turned into ``SessionEvent`` objects and handed to subscriber
queues. Nothing is delivered for codes this client has not joined, and nothing at
all once ``disconnect`` has been called.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Protocol

import httpx
import websockets

from ..core.config import settings
from ..core.errors import ConnectTimeout, JoinTimeout, PinqError, RoomExpired, RoomFull, RoomNotFound
from ..schemas.broker import Role
from .codes import normalize_code
from .events import BROKER_EVENTS, EventKind, SessionEvent

RECONNECT_DELAY = 0.5

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str, float], Awaitable[Transport]]


async def websocket_connector(url: str, timeout: float) -> Transport:
    """Open a websocket to the broker."""

    return await websockets.connect(url, open_timeout=timeout, max_size=2**20)


@dataclass(slots=True)
class JoinResult:
    code: str
    peers: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _PendingJoin:
    role: Role
    future: asyncio.Future[list[str]]


class SignalingClient:
    """Reconnect-aware client used by both ends to talk to the broker."""

    def __init__(
        self,
        url: str | None = None,
        *,
        http_url: str | None = None,
        connector: Connector | None = None,
        reconnection_attempts: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._url = url or settings.ws_url
        self._http_url = (http_url or settings.signaling_url).rstrip("/")
        self._connector = connector or websocket_connector
        self._attempts = reconnection_attempts or settings.reconnection_attempts
        self._timeout = timeout or settings.signaling_timeout

        self._transport: Transport | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnector: asyncio.Task[None] | None = None
        self._active = False
        self._joined: Dict[str, Role] = {}
        self._pending: Dict[str, _PendingJoin] = {}
        self._subscribers: list[tuple[asyncio.Queue[SessionEvent], frozenset[EventKind]]] = []
        self.connection_id: str | None = None

    async def __aenter__(self) -> "SignalingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    @property
    def connected(self) -> bool:
        return self._transport is not None and self._reader is not None and not self._reader.done()

    @property
    def joined_codes(self) -> list[str]:
        return list(self._joined)

    async def prewarm(self, timeout: float | None = None) -> bool:
        """Ping the broker health endpoint so a cold process can spin up.

        Failures are logged and reported as ``False``; callers carry on and let the
        connect timeout decide.
        """

        effective = timeout or settings.prewarm_timeout
        try:
            async with httpx.AsyncClient(timeout=effective) as client:
                response = await client.get(f"{self._http_url}/health", headers={"Cache-Control": "no-store"})
        except httpx.HTTPError as exc:
            logger.warning("Pre-warm failed, server may be cold: %s", exc)
            return False
        if response.status_code != 200:
            logger.warning("Pre-warm got HTTP %s from %s", response.status_code, self._http_url)
            return False
        logger.debug("Signaling server is warm")
        return True

    async def connect(self, timeout: float | None = None) -> None:
        if self.connected:
            return
        self._active = True
        transport = await self._open_transport(timeout or self._timeout)
        self._attach(transport)
        logger.debug("Connected to %s", self._url)

    async def join(self, code: str, role: Role = Role.GUEST, timeout: float | None = None) -> JoinResult:
        """Join the room for ``code`` and wait for the broker's verdict on it."""

        normalized = normalize_code(code)
        effective = timeout or self._timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + effective

        await self.connect(effective)
        if normalized in self._pending:
            raise RuntimeError(f"Join for {normalized} already in progress")

        pending = _PendingJoin(role=role, future=loop.create_future())
        self._pending[normalized] = pending
        try:
            await self._send({"type": "join-room", "code": normalized, "role": role.value})
            remaining = max(0.0, deadline - loop.time())
            peers = await asyncio.wait_for(pending.future, remaining)
        except asyncio.TimeoutError:
            raise JoinTimeout(code=normalized) from None
        finally:
            if self._pending.get(normalized) is pending:
                del self._pending[normalized]

        logger.debug("Joined room %s as %s (peers: %s)", normalized, role.value, peers)
        return JoinResult(code=normalized, peers=peers)

    async def send_signal(self, code: str, payload: Any) -> None:
        """Relay a handshake payload to the other member; no acknowledgement is expected."""

        if self._transport is None:
            logger.warning("Dropping signal for %s: not connected", code)
            return
        try:
            await self._send({"type": "signal", "code": normalize_code(code), "signal": payload})
        except (OSError, websockets.ConnectionClosed) as exc:
            logger.warning("Failed to relay signal for %s: %s", code, exc)

    def subscribe(self, kinds: Iterable[EventKind] | None = None) -> asyncio.Queue[SessionEvent]:
        """Return a queue receiving broker events of the given kinds."""

        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        wanted = frozenset(kinds) if kinds is not None else BROKER_EVENTS
        self._subscribers.append((queue, wanted))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        self._subscribers = [entry for entry in self._subscribers if entry[0] is not queue]

    async def disconnect(self) -> None:
        """Close the transport; no event is delivered after this returns."""

        self._active = False
        self._subscribers.clear()
        self._joined.clear()
        for pending in self._pending.values():
            if not pending.future.done():
                pending.future.cancel()
        self._pending.clear()

        current = asyncio.current_task()
        tasks = [task for task in (self._reader, self._reconnector) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        self._reader = None
        self._reconnector = None

        transport, self._transport = self._transport, None
        if transport is not None:
            with suppress(Exception):
                await transport.close()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        logger.debug("Disconnected from %s", self._url)

    async def _open_transport(self, timeout: float) -> Transport:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_error: BaseException | None = None
        for attempt in range(1, self._attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                return await asyncio.wait_for(self._connector(self._url, remaining), remaining)
            except asyncio.TimeoutError as exc:
                last_error = exc
                break
            except (OSError, websockets.WebSocketException) as exc:
                last_error = exc
                logger.debug("Connect attempt %d/%d to %s failed: %s", attempt, self._attempts, self._url, exc)
                await asyncio.sleep(min(RECONNECT_DELAY * attempt, max(0.0, deadline - loop.time())))
        raise ConnectTimeout() from last_error

    def _attach(self, transport: Transport) -> None:
        self._transport = transport
        self._reader = asyncio.create_task(self._read_loop(transport))

    async def _send(self, message: dict) -> None:
        if self._transport is None:
            raise ConnectionError("Signaling transport is not connected")
        await self._transport.send(json.dumps(message))

    async def _read_loop(self, transport: Transport) -> None:
        try:
            async for raw in transport:
                if not self._active:
                    return
                try:
                    message = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.debug("Ignoring malformed broker frame")
                    continue
                if isinstance(message, dict):
                    self._handle(message)
        except asyncio.CancelledError:
            raise
        except (OSError, websockets.ConnectionClosed) as exc:
            logger.debug("Signaling transport closed: %s", exc)

        if self._active and self._transport is transport:
            logger.warning("Lost connection to signaling server, reconnecting")
            self._transport = None
            self._reconnector = asyncio.create_task(self._reconnect())

    def _handle(self, message: dict) -> None:
        kind = message.get("type")
        code = message.get("code")

        if kind == "connected":
            self.connection_id = message.get("connectionId")
        elif kind in ("room-joined", "room-full", "room-not-found"):
            pending = self._pending.get(code)
            if pending is not None and not pending.future.done():
                if kind == "room-joined":
                    self._joined[code] = pending.role
                    pending.future.set_result(list(message.get("peers") or []))
                elif kind == "room-full":
                    pending.future.set_exception(RoomFull(code=code))
                else:
                    pending.future.set_exception(RoomNotFound(code=code))
            elif kind == "room-not-found" and code in self._joined:
                # a signal hit a room that was reaped or no longer lists us
                self._dispatch(SessionEvent(EventKind.ROOM_EXPIRED, code=code))
                self._joined.pop(code, None)
        elif kind == "room-expired":
            pending = self._pending.get(code)
            if pending is not None and not pending.future.done():
                pending.future.set_exception(RoomExpired(code=code))
            self._dispatch(SessionEvent(EventKind.ROOM_EXPIRED, code=code))
            self._joined.pop(code, None)
        elif kind == "peer-joined":
            self._dispatch(SessionEvent(EventKind.PEER_JOINED, code=code, peer_id=message.get("peerId")))
        elif kind == "peer-disconnected":
            self._dispatch(SessionEvent(EventKind.PEER_DISCONNECTED, code=code, peer_id=message.get("peerId")))
        elif kind == "signal":
            self._dispatch(
                SessionEvent(EventKind.SIGNAL, code=code, payload=message.get("signal"), peer_id=message.get("from"))
            )
        elif kind == "error":
            reason = message.get("message") or "Broker rejected the request"
            for pending_code, pending in self._pending.items():
                if not pending.future.done():
                    pending.future.set_exception(RoomNotFound(reason, code=pending_code))
        else:
            logger.debug("Ignoring unknown broker event %r", kind)

    def _dispatch(self, event: SessionEvent, *, force: bool = False) -> None:
        if not self._active or (event.code not in self._joined and not force):
            return
        for queue, kinds in self._subscribers:
            if event.kind in kinds:
                queue.put_nowait(event)

    async def _reconnect(self) -> None:
        rooms = dict(self._joined)
        try:
            transport = await self._open_transport(self._timeout)
        except ConnectTimeout as exc:
            logger.warning("Giving up on signaling server: %s", exc)
            self._lose(rooms)
            return
        if not self._active:
            with suppress(Exception):
                await transport.close()
            return

        self._attach(transport)
        for code, role in rooms.items():
            self._joined.pop(code, None)
            try:
                await self.join(code, role)
            except PinqError as exc:
                logger.warning("Could not rejoin %s after reconnect: %s", code, exc)
                self._lose({code: role})

    def _lose(self, rooms: Dict[str, Role]) -> None:
        for code in rooms:
            self._joined.pop(code, None)
            self._dispatch(SessionEvent(EventKind.TRANSPORT_LOST, code=code), force=True)
