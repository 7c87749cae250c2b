"""Direct channel over a plain TCP connection.

The initiator listens on an ephemeral port and advertises its candidates plus a
one-time token in the offer. The responder dials the candidates, proves the token
in a hello frame and answers. Messages travel as length-prefixed frames:

```
+-----------+----------------+-----------------+
| Kind (1B) | Length (4B BE) | Payload         |
+-----------+----------------+-----------------+
```
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import socket
import struct
from contextlib import suppress

from ..core.config import settings
from ..core.errors import ChannelClosedError
from ..services.events import EventKind
from .base import HIGH_WATER_MARK, ChannelRole, PeerChannel, SignalCallback

FRAME_HEADER = struct.Struct(">BI")
FRAME_HELLO = 0
FRAME_BINARY = 1
FRAME_TEXT = 2
MAX_FRAME_BYTES = 1024 * 1024
DIAL_TIMEOUT = 5.0
HELLO_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


def local_ip() -> str:
    """Best guess at the address peers on the LAN can reach us on."""

    try:
        # Connecting a UDP socket sends nothing; it only picks the outbound route.
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("8.8.8.8", 80))
            return probe.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def encode_frame(kind: int, payload: bytes) -> bytes:
    return FRAME_HEADER.pack(kind, len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    header = await reader.readexactly(FRAME_HEADER.size)
    kind, length = FRAME_HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise ValueError(f"Frame too large: {length}")
    payload = await reader.readexactly(length) if length else b""
    return kind, payload


class TcpChannel(PeerChannel):
    def __init__(
        self,
        role: ChannelRole,
        on_signal: SignalCallback,
        *,
        host: str | None = None,
        port: int | None = None,
        high_water: int = HIGH_WATER_MARK,
    ) -> None:
        super().__init__(role, on_signal, high_water=high_water)
        self._advertise_host = host or settings.channel_host or local_ip()
        self._port = settings.channel_port if port is None else port
        self._token = secrets.token_urlsafe(16)
        self._server: asyncio.AbstractServer | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._dial_task: asyncio.Task[None] | None = None

    async def open(self) -> None:
        if self.role is not ChannelRole.INITIATOR:
            return
        self._server = await asyncio.start_server(self._on_client, host="0.0.0.0", port=self._port)
        port = self._server.sockets[0].getsockname()[1]
        candidates = [{"host": self._advertise_host, "port": port}]
        if self._advertise_host != "127.0.0.1":
            candidates.append({"host": "127.0.0.1", "port": port})
        logger.debug("Listening for peer on port %d", port)
        await self._on_signal({"type": "offer", "candidates": candidates, "token": self._token})

    async def signal(self, payload: dict) -> None:
        if self._closed or not isinstance(payload, dict):
            return
        if payload.get("type") == "offer" and self.role is ChannelRole.RESPONDER and self._dial_task is None:
            self._dial_task = asyncio.create_task(self._dial(payload))

    async def send(self, data: bytes | str) -> None:
        writer = self._writer
        if self._closed or writer is None or writer.is_closing():
            raise ChannelClosedError("TCP channel is closed")
        if isinstance(data, str):
            frame = encode_frame(FRAME_TEXT, data.encode("utf-8"))
        else:
            frame = encode_frame(FRAME_BINARY, bytes(data))
        try:
            writer.write(frame)
            await writer.drain()
        except ConnectionError as exc:
            raise ChannelClosedError(str(exc)) from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release_writers()
        current = asyncio.current_task()
        for task in (self._read_task, self._dial_task):
            if task is not None and task is not current:
                task.cancel()
        if self._server is not None:
            self._server.close()
        if self._writer is not None:
            self._writer.close()
            with suppress(ConnectionError):
                await self._writer.wait_closed()

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._writer is not None or self._closed:
            writer.close()
            return
        try:
            kind, payload = await asyncio.wait_for(read_frame(reader), HELLO_TIMEOUT)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError, ValueError):
            writer.close()
            return
        if kind != FRAME_HELLO or not secrets.compare_digest(payload, self._token.encode()):
            logger.warning("Rejected peer connection with a bad token")
            writer.close()
            return
        if self._closed:
            writer.close()
            return
        if self._server is not None:
            self._server.close()
        self._attach(reader, writer)

    async def _dial(self, offer: dict) -> None:
        token = str(offer.get("token", "")).encode()
        last_error: Exception | None = None
        for candidate in offer.get("candidates") or []:
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(candidate["host"], int(candidate["port"])), DIAL_TIMEOUT
                )
            except (OSError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as exc:
                last_error = exc
                continue
            try:
                writer.write(encode_frame(FRAME_HELLO, token))
                await writer.drain()
            except ConnectionError as exc:
                last_error = exc
                writer.close()
                continue
            self._attach(reader, writer)
            await self._on_signal({"type": "answer"})
            return
        self._emit(EventKind.CHANNEL_ERROR, error=ConnectionError(f"Could not reach peer: {last_error}"))

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._read_task = asyncio.create_task(self._read_loop(reader))
        self._emit(EventKind.CHANNEL_CONNECT)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                # stop reading while the consumer is behind; TCP flow control does the rest
                await self.wait_writable()
                kind, payload = await read_frame(reader)
                if kind == FRAME_TEXT:
                    self._emit(EventKind.CHANNEL_DATA, payload=payload.decode("utf-8"))
                elif kind == FRAME_BINARY:
                    self._emit(EventKind.CHANNEL_DATA, payload=payload)
        except (asyncio.IncompleteReadError, ConnectionError):
            self._emit(EventKind.CHANNEL_CLOSE)
        except (ValueError, UnicodeDecodeError) as exc:
            self._emit(EventKind.CHANNEL_ERROR, error=exc)


def tcp_channel_factory(role: ChannelRole, on_signal: SignalCallback) -> TcpChannel:
    return TcpChannel(role, on_signal)
