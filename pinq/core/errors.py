"""Error taxonomy shared by the broker, the signaling client and transfer sessions."""
from __future__ import annotations


class PinqError(RuntimeError):
    """Base error carrying the phase it happened in and the pairing code involved."""

    phase = "unknown"
    default_message = "Transfer failed"

    def __init__(self, message: str | None = None, *, code: str | None = None, phase: str | None = None) -> None:
        self.message = message or self.default_message
        self.code = code
        if phase is not None:
            self.phase = phase
        super().__init__(self.message)

    def __str__(self) -> str:
        where = f"[{self.phase}"
        if self.code:
            where += f" {self.code}"
        return f"{where}] {self.message}"


class RoomError(PinqError):
    phase = "setup"


class RoomNotFound(RoomError):
    default_message = "Room not found. Try a new code."


class RoomFull(RoomError):
    default_message = "Room is already occupied by another device"


class RoomExpired(RoomError):
    default_message = "Code expired. Reset the code and try again."


class HandshakeError(PinqError):
    phase = "handshake"


class ConnectTimeout(HandshakeError):
    default_message = "Failed to connect to signaling (server may be asleep)"


class JoinTimeout(HandshakeError):
    default_message = "Timed out joining room"


class OfferTimeout(HandshakeError):
    default_message = "Timed out waiting for an offer from the sender"


class PeerConnectTimeout(HandshakeError):
    default_message = "Timed out waiting for peer connection"


class ProtocolError(PinqError):
    phase = "framing"


class MetadataTimeout(ProtocolError):
    default_message = "Timed out waiting for metadata"


class UnexpectedData(ProtocolError):
    default_message = "Received payload before metadata"


class DecodeError(ProtocolError):
    default_message = "Failed to parse metadata"


class PayloadError(PinqError):
    phase = "payload"


class AckTimeout(PayloadError):
    default_message = "Did not receive a confirmation from the receiver"


class TransferAborted(PayloadError):
    default_message = "Connection closed before the transfer completed"


class SinkWriteError(PayloadError):
    default_message = "Failed to write received data"


class PayloadTooLarge(PayloadError):
    default_message = "Payload exceeds the maximum transfer size"


class ChannelClosedError(ConnectionError):
    """Raised by direct channels when sending on a closed channel."""
