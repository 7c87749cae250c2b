"""Transfer session state machine.

A session owns one direct channel and runs the application protocol over it:
metadata frame, chunks, end marker, acknowledgement. Broker events and channel
events are pumped into a single bounded inbox that the session consumes in order,
so every wait is a plain deadline-bounded read and nothing is delivered after
``close``.

States::

    AwaitingPeer -> AwaitingOffer (receiver) -> Connecting -> AwaitingMetadata
        -> Streaming -> AwaitingAck (sender) | SendingAck (receiver) -> Closed

``Failed`` is reachable from every non-terminal state.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from contextlib import suppress
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

import aiofiles
import aiofiles.os

from ..channels.base import ChannelFactory, ChannelRole, PeerChannel
from ..core.config import Settings, settings as default_settings
from ..core.errors import (
    AckTimeout,
    ChannelClosedError,
    HandshakeError,
    MetadataTimeout,
    OfferTimeout,
    PayloadTooLarge,
    PeerConnectTimeout,
    PinqError,
    RoomExpired,
    SinkWriteError,
    TransferAborted,
    UnexpectedData,
)
from ..schemas.broker import Role
from ..schemas.transfer import MetadataFrame, TransferKind, TransferResult
from .codec import (
    ACK_MARKER,
    END_MARKER,
    LEGACY_ACK_MARKER,
    MarkerKind,
    classify_marker,
    decode_metadata,
    encode_metadata,
    iter_chunks,
    looks_like_metadata,
)
from .codes import normalize_code
from .events import BROKER_EVENTS, EventKind, SessionEvent
from .signaling import SignalingClient
from .sinks import FileSink, PayloadSink, TextSink

logger = logging.getLogger(__name__)

StateCallback = Callable[["SessionState"], None]
ProgressCallback = Callable[[int, "int | None"], None]
ConfirmCallback = Callable[[MetadataFrame], Awaitable[bool]]
SinkFactory = Callable[[MetadataFrame], PayloadSink]

CHANNEL_EVENTS = frozenset(
    {
        EventKind.CHANNEL_CONNECT,
        EventKind.CHANNEL_DATA,
        EventKind.CHANNEL_CLOSE,
        EventKind.CHANNEL_ERROR,
    }
)


class SessionState(str, Enum):
    AWAITING_PEER = "awaiting_peer"
    AWAITING_OFFER = "awaiting_offer"
    CONNECTING = "connecting"
    AWAITING_METADATA = "awaiting_metadata"
    STREAMING = "streaming"
    AWAITING_ACK = "awaiting_ack"
    SENDING_ACK = "sending_ack"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


def is_offer(payload: object) -> bool:
    return isinstance(payload, dict) and payload.get("type") == "offer"


class TransferSession:
    """Shared plumbing for sender and receiver sessions."""

    role = "session"
    join_role = Role.GUEST
    channel_role = ChannelRole.RESPONDER

    def __init__(
        self,
        code: str,
        signaling: SignalingClient,
        channel_factory: ChannelFactory,
        *,
        config: Settings | None = None,
        on_state: StateCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.code = normalize_code(code)
        self.config = config or default_settings
        self._signaling = signaling
        self._channel_factory = channel_factory
        self._on_state = on_state
        self._on_progress = on_progress

        self._state = SessionState.AWAITING_PEER
        self._inbox: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self.config.inbox_size)
        self._subscription: asyncio.Queue[SessionEvent] | None = None
        self._signal_pump: asyncio.Task[None] | None = None
        self._channel_pump: asyncio.Task[None] | None = None
        self._channel: PeerChannel | None = None
        self._runner: asyncio.Task | None = None
        self._closed = False
        self._closing = False
        self._connected = False
        self._peer_present = False
        self._stashed_offer: dict | None = None

        self.connect_attempts = 0
        self.error: PinqError | None = None
        self.history: list[SessionState] = [self._state]

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def channel(self) -> PeerChannel | None:
        return self._channel

    async def run(self) -> TransferResult:
        """Drive the session to ``Closed`` or raise the error that made it fail."""

        if self._runner is not None or self._closed:
            raise RuntimeError("Transfer session can only run once")
        self._runner = asyncio.current_task()
        try:
            result = await self._execute()
        except PinqError as exc:
            if exc.code is None:
                exc.code = self.code
            self.error = exc
            self._transition(SessionState.FAILED)
            logger.warning("Transfer %s failed while %s: %s", self.code, self.history[-2].value, exc)
            raise
        except asyncio.CancelledError:
            self._transition(SessionState.CLOSED if self._closing else SessionState.FAILED)
            raise
        except BaseException:
            self._transition(SessionState.FAILED)
            raise
        finally:
            await self._teardown()
        self._transition(SessionState.CLOSED)
        return result

    async def close(self) -> None:
        """Cancel the session; no event is dispatched to it after this call."""

        runner = self._runner
        self._closing = True
        if runner is not None and runner is not asyncio.current_task() and not runner.done():
            runner.cancel()
            # the runner's outcome stays with whoever awaits run()
            await asyncio.wait({runner})
        await self._teardown()
        if self._state not in TERMINAL_STATES and runner is None:
            self._transition(SessionState.CLOSED)

    async def _execute(self) -> TransferResult:
        raise NotImplementedError

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s (%s): %s -> %s", self.code, self.role, self._state.value, state.value)
        self._state = state
        self.history.append(state)
        if self._on_state is not None:
            self._on_state(state)

    def _progress(self, done: int, total: int | None) -> None:
        if self._on_progress is not None:
            self._on_progress(done, total)

    async def _teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._signaling.unsubscribe(self._subscription)
        pumps = [task for task in (self._signal_pump, self._channel_pump) if task is not None]
        for task in pumps:
            task.cancel()
        while not self._inbox.empty():
            self._inbox.get_nowait()

        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()
        for task in pumps:
            with suppress(asyncio.CancelledError):
                await task

    # -- event plumbing -------------------------------------------------

    async def _pump_signaling(self, queue: asyncio.Queue[SessionEvent]) -> None:
        while True:
            event = await queue.get()
            if event.code not in (None, self.code):
                continue
            await self._inbox.put(event)

    async def _pump_channel(self, channel: PeerChannel) -> None:
        while True:
            event = await channel.next_event()
            await self._inbox.put(event)
            if event.kind is EventKind.CHANNEL_CLOSE:
                return

    async def _next_event(self, deadline: float, on_timeout: Callable[[], PinqError]) -> SessionEvent:
        """Return the next relevant event, raising ``on_timeout()`` past the deadline."""

        loop = asyncio.get_running_loop()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise on_timeout()
            try:
                event = await asyncio.wait_for(self._inbox.get(), remaining)
            except asyncio.TimeoutError:
                raise on_timeout() from None
            if event.kind in CHANNEL_EVENTS and event.source is not self._channel:
                continue
            return event

    def _deadline(self, seconds: float) -> float:
        return asyncio.get_running_loop().time() + seconds

    async def _handle_background(self, event: SessionEvent) -> None:
        """React to an event the current step is not waiting for."""

        kind = event.kind
        if kind is EventKind.SIGNAL:
            if self._channel is not None:
                await self._channel.signal(event.payload)
        elif kind is EventKind.CHANNEL_CLOSE:
            raise TransferAborted(f"Connection closed while {self._state.value.replace('_', ' ')}")
        elif kind is EventKind.CHANNEL_ERROR:
            raise TransferAborted(f"Peer channel error: {event.error}")
        elif kind is EventKind.ROOM_EXPIRED and not self._connected:
            raise RoomExpired()
        elif kind is EventKind.TRANSPORT_LOST and not self._connected:
            raise HandshakeError("Lost connection to the signaling server")
        elif kind is EventKind.PEER_DISCONNECTED:
            self._peer_present = False
            logger.info("Peer %s left room %s", event.peer_id, self.code)
        elif kind is EventKind.PEER_JOINED:
            self._peer_present = True
        else:
            logger.debug("Ignoring %s while %s", kind.value, self._state.value)

    async def _send_signal(self, payload: dict) -> None:
        await self._signaling.send_signal(self.code, payload)

    async def _channel_send(self, data: bytes | str) -> None:
        channel = self._channel
        if channel is None:
            raise TransferAborted("No direct channel")
        try:
            await channel.send(data)
        except (ChannelClosedError, ConnectionError) as exc:
            raise TransferAborted(f"Connection closed while {self._state.value.replace('_', ' ')}") from exc

    def _poll_inbox(self) -> list[SessionEvent]:
        events = []
        while True:
            try:
                event = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if event.kind in CHANNEL_EVENTS and event.source is not self._channel:
                continue
            events.append(event)

    # -- shared steps ---------------------------------------------------

    async def _join(self) -> None:
        self._subscription = self._signaling.subscribe(BROKER_EVENTS)
        self._signal_pump = asyncio.create_task(self._pump_signaling(self._subscription))
        result = await self._signaling.join(self.code, self.join_role, timeout=self.config.signaling_timeout)
        self._peer_present = bool(result.peers)

    async def _await_peer(self) -> None:
        if self._peer_present:
            return
        deadline = self._deadline(self.config.peer_timeout)
        while True:
            event = await self._next_event(
                deadline, lambda: PeerConnectTimeout("Timed out waiting for the other device to join")
            )
            if event.kind is EventKind.PEER_JOINED:
                self._peer_present = True
                return
            if event.kind is EventKind.SIGNAL:
                # a signal can only come from a peer that is already in the room
                if is_offer(event.payload):
                    self._stashed_offer = event.payload
                self._peer_present = True
                return
            await self._handle_background(event)

    async def _open_channel(self, offer: dict | None) -> None:
        previous, self._channel = self._channel, None
        if self._channel_pump is not None:
            self._channel_pump.cancel()
        if previous is not None:
            await previous.close()

        self.connect_attempts += 1
        channel = self._channel_factory(self.channel_role, self._send_signal)
        self._channel = channel
        self._channel_pump = asyncio.create_task(self._pump_channel(channel))
        await channel.open()
        if offer is not None:
            await channel.signal(offer)

    async def _connect(self, offer: dict | None = None) -> None:
        """Build the direct channel and wait for it to connect.

        A fresh ``peer-joined`` (sender) or a fresh offer (receiver) while
        connecting restarts the attempt with a new channel, up to
        ``max_connect_attempts`` within one overall deadline.
        """

        self._transition(SessionState.CONNECTING)
        deadline = self._deadline(self.config.peer_connect_timeout)
        await self._open_channel(offer)
        while True:
            event = await self._next_event(deadline, lambda: PeerConnectTimeout())
            if event.kind is EventKind.CHANNEL_CONNECT:
                self._connected = True
                logger.info("Direct channel for %s connected", self.code)
                return
            retry_offer = None
            if self.channel_role is ChannelRole.INITIATOR and event.kind is EventKind.PEER_JOINED:
                retry = True
            elif self.channel_role is ChannelRole.RESPONDER and event.kind is EventKind.SIGNAL and is_offer(event.payload):
                retry, retry_offer = True, event.payload
            else:
                retry = False
            if not retry:
                await self._handle_background(event)
                continue
            if self.connect_attempts >= self.config.max_connect_attempts:
                raise PeerConnectTimeout(f"Gave up after {self.connect_attempts} connection attempts")
            logger.info("Restarting handshake for %s (attempt %d)", self.code, self.connect_attempts + 1)
            self._transition(SessionState.CONNECTING)
            await self._open_channel(retry_offer)


class SenderSession(TransferSession):
    """Creator side: waits for the receiver, then pushes one payload."""

    role = "sender"
    join_role = Role.CREATOR
    channel_role = ChannelRole.INITIATOR

    def __init__(
        self,
        code: str,
        signaling: SignalingClient,
        channel_factory: ChannelFactory,
        *,
        metadata: MetadataFrame,
        text: str | None = None,
        path: Path | None = None,
        **kwargs,
    ) -> None:
        super().__init__(code, signaling, channel_factory, **kwargs)
        self.metadata = metadata
        self._data = text.encode("utf-8") if text is not None else None
        self._path = path
        total = len(self._data) if self._data is not None else metadata.size or 0
        if total > self.config.max_payload_bytes:
            raise PayloadTooLarge(
                f"{total} bytes exceeds the {self.config.max_payload_bytes} byte limit", code=self.code
            )
        self.total_bytes = total

    @classmethod
    def for_text(cls, code: str, text: str, signaling: SignalingClient, channel_factory: ChannelFactory, **kwargs) -> "SenderSession":
        metadata = MetadataFrame(type=TransferKind.TEXT)
        return cls(code, signaling, channel_factory, metadata=metadata, text=text, **kwargs)

    @classmethod
    def for_file(cls, code: str, path: Path, signaling: SignalingClient, channel_factory: ChannelFactory, **kwargs) -> "SenderSession":
        path = Path(path)
        mime_type, _ = mimetypes.guess_type(path.name)
        metadata = MetadataFrame(
            type=TransferKind.FILE,
            filename=path.name,
            size=path.stat().st_size,
            mime_type=mime_type or "application/octet-stream",
        )
        return cls(code, signaling, channel_factory, metadata=metadata, path=path, **kwargs)

    async def _chunks(self) -> AsyncIterator[bytes]:
        chunk_size = self.config.chunk_size
        if self._data is not None:
            for chunk in iter_chunks(self._data, chunk_size):
                yield chunk
            return
        try:
            async with aiofiles.open(self._path, "rb") as source:
                while True:
                    chunk = await source.read(chunk_size)
                    if not chunk:
                        return
                    yield chunk
        except OSError as exc:
            raise TransferAborted(f"Failed to read {self._path}: {exc}") from exc

    async def _execute(self) -> TransferResult:
        await self._join()
        await self._await_peer()
        await self._connect()

        self._transition(SessionState.AWAITING_METADATA)
        await self._channel_send(encode_metadata(self.metadata).decode("utf-8"))

        self._transition(SessionState.STREAMING)
        sent = chunks = 0
        async for chunk in self._chunks():
            for event in self._poll_inbox():
                await self._handle_background(event)
            sent += len(chunk)
            if sent > self.config.max_payload_bytes:
                raise PayloadTooLarge("Source grew past the transfer limit while sending")
            await self._channel_send(chunk)
            chunks += 1
            self._progress(sent, self.total_bytes)
        await self._channel_send(END_MARKER)

        self._transition(SessionState.AWAITING_ACK)
        await self._await_ack()
        logger.info("Transfer %s acknowledged (%d bytes in %d chunks)", self.code, sent, chunks)
        return TransferResult(
            code=self.code,
            role=self.role,
            metadata=self.metadata,
            bytes_transferred=sent,
            chunks=chunks,
            path=self._path,
        )

    async def _await_ack(self) -> None:
        deadline = self._deadline(self.config.ack_timeout)
        while True:
            event = await self._next_event(deadline, lambda: AckTimeout())
            if event.kind is EventKind.CHANNEL_DATA:
                if classify_marker(event.payload) is MarkerKind.ACK:
                    return
                logger.debug("Ignoring data from receiver while awaiting ack")
                continue
            if event.kind is EventKind.CHANNEL_CLOSE:
                raise TransferAborted("Connection closed before the receiver confirmed")
            await self._handle_background(event)


class ReceiverSession(TransferSession):
    """Guest side: answers the sender's offer and consumes one payload."""

    role = "receiver"
    join_role = Role.GUEST
    channel_role = ChannelRole.RESPONDER

    def __init__(
        self,
        code: str,
        signaling: SignalingClient,
        channel_factory: ChannelFactory,
        *,
        download_dir: Path | None = None,
        sink_factory: SinkFactory | None = None,
        confirm: ConfirmCallback | None = None,
        **kwargs,
    ) -> None:
        super().__init__(code, signaling, channel_factory, **kwargs)
        self.download_dir = Path(download_dir or self.config.download_dir)
        self._sink_factory = sink_factory or self._default_sink
        self._confirm = confirm
        self.metadata: MetadataFrame | None = None
        self.sink: PayloadSink | None = None

    def _default_sink(self, metadata: MetadataFrame) -> PayloadSink:
        if metadata.type is TransferKind.FILE:
            return FileSink(self.download_dir, metadata.filename)
        return TextSink()

    async def _execute(self) -> TransferResult:
        await self._join()
        await self._await_peer()
        offer = await self._await_offer()
        await self._connect(offer)

        metadata = await self._await_metadata()
        self.metadata = metadata
        if self._confirm is not None and not await self._confirm(metadata):
            logger.info("Transfer %s declined", self.code)
            return TransferResult(code=self.code, role=self.role, metadata=metadata, accepted=False)

        sink = self._sink_factory(metadata)
        self.sink = sink
        try:
            received, chunks = await self._stream_into(sink, metadata)
            self._transition(SessionState.SENDING_ACK)
            try:
                await sink.finalize()
            except OSError as exc:
                raise SinkWriteError(str(exc)) from exc
        except BaseException:
            await sink.discard()
            raise

        await self._send_ack()
        await self._linger()
        return TransferResult(
            code=self.code,
            role=self.role,
            metadata=metadata,
            bytes_transferred=received,
            chunks=chunks,
            text=sink.text if isinstance(sink, TextSink) else None,
            path=sink.path if isinstance(sink, FileSink) else None,
        )

    async def _await_offer(self) -> dict:
        self._transition(SessionState.AWAITING_OFFER)
        if self._stashed_offer is not None:
            return self._stashed_offer
        deadline = self._deadline(self.config.offer_timeout)
        while True:
            event = await self._next_event(deadline, lambda: OfferTimeout())
            if event.kind is EventKind.SIGNAL:
                if is_offer(event.payload):
                    return event.payload
                logger.debug("Discarding handshake signal received before the offer")
                continue
            await self._handle_background(event)

    async def _await_metadata(self) -> MetadataFrame:
        self._transition(SessionState.AWAITING_METADATA)
        deadline = self._deadline(self.config.metadata_timeout)
        while True:
            event = await self._next_event(deadline, lambda: MetadataTimeout())
            if event.kind is EventKind.CHANNEL_DATA:
                payload = event.payload
                if classify_marker(payload) is not MarkerKind.DATA or not looks_like_metadata(payload):
                    raise UnexpectedData()
                return decode_metadata(payload)
            await self._handle_background(event)

    async def _stream_into(self, sink: PayloadSink, metadata: MetadataFrame) -> tuple[int, int]:
        self._transition(SessionState.STREAMING)
        received = chunks = 0
        while True:
            event = await self._next_event(
                self._deadline(self.config.idle_timeout),
                lambda: TransferAborted("Sender stopped sending data"),
            )
            if event.kind is not EventKind.CHANNEL_DATA:
                await self._handle_background(event)
                continue
            payload = event.payload
            if classify_marker(payload) is MarkerKind.END:
                break
            chunk = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
            received += len(chunk)
            if received > self.config.max_payload_bytes:
                raise TransferAborted("Sender exceeded the transfer size limit")
            try:
                await sink.write(chunk)
            except OSError as exc:
                raise SinkWriteError(str(exc)) from exc
            chunks += 1
            self._progress(received, metadata.size)

        if metadata.size is not None and metadata.size != received:
            logger.warning("Transfer %s announced %d bytes but delivered %d", self.code, metadata.size, received)
        return received, chunks

    async def _send_ack(self) -> None:
        markers = [ACK_MARKER, LEGACY_ACK_MARKER] if self.config.legacy_ack else [ACK_MARKER]
        try:
            for marker in markers:
                await self._channel_send(marker)
        except TransferAborted:
            # the payload is already durable; only the sender's confirmation is lost
            logger.warning("Could not acknowledge transfer %s: channel already closed", self.code)

    async def _linger(self) -> None:
        """Keep the channel open briefly so the sender can observe the ack."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ack_linger
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                event = await asyncio.wait_for(self._inbox.get(), remaining)
            except asyncio.TimeoutError:
                return
            if event.source is self._channel and event.kind in (EventKind.CHANNEL_CLOSE, EventKind.CHANNEL_ERROR):
                return
