"""Pure framing helpers for the direct-channel protocol.

The wire format is message oriented: one metadata frame (JSON text), any number of
binary chunks, one end marker from the sender and one ack marker from the receiver.
Markers always travel as text frames and chunks as binary frames, so a chunk whose
bytes happen to spell a marker is still payload. Both markers have a canonical
spelling that we emit and a legacy short spelling that older clients still send;
every comparison goes through ``classify_marker``.
"""
from __future__ import annotations

import json
import math
from enum import Enum
from typing import Iterator

from pydantic import ValidationError

from ..core.errors import DecodeError
from ..schemas.transfer import MetadataFrame

CHUNK_SIZE = 16 * 1024
MAX_PAYLOAD_BYTES = 50 * 1024 * 1024

END_MARKER = "PINQ:EOF"
ACK_MARKER = "PINQ:ACK"
LEGACY_END_MARKER = "EOF"
LEGACY_ACK_MARKER = "ACK"

Message = bytes | str


class MarkerKind(str, Enum):
    END = "end"
    ACK = "ack"
    DATA = "data"


_MARKERS: dict[bytes, MarkerKind] = {
    END_MARKER.encode(): MarkerKind.END,
    LEGACY_END_MARKER.encode(): MarkerKind.END,
    ACK_MARKER.encode(): MarkerKind.ACK,
    LEGACY_ACK_MARKER.encode(): MarkerKind.ACK,
}
_LONGEST_MARKER = max(len(marker) for marker in _MARKERS)


def _as_bytes(message: Message) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


def classify_marker(message: Message, *, binary_is_data: bool = True) -> MarkerKind:
    """Normalise a received message into END, ACK or plain DATA.

    Binary messages are payload unless ``binary_is_data`` is false, which is only
    useful for transports that cannot tell text frames from binary ones.
    """

    if binary_is_data and not isinstance(message, str):
        return MarkerKind.DATA
    if len(message) > _LONGEST_MARKER:
        return MarkerKind.DATA
    return _MARKERS.get(_as_bytes(message), MarkerKind.DATA)


def is_end_marker(message: Message) -> bool:
    return classify_marker(message) is MarkerKind.END


def is_ack_marker(message: Message) -> bool:
    return classify_marker(message) is MarkerKind.ACK


def encode_metadata(frame: MetadataFrame) -> bytes:
    """Serialise a metadata frame using the wire field names."""

    return frame.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode_metadata(message: Message) -> MetadataFrame:
    """Parse a metadata frame, raising ``DecodeError`` on malformed input."""

    try:
        payload = json.loads(_as_bytes(message).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"Metadata is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise DecodeError("Metadata must be a JSON object")
    try:
        return MetadataFrame.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(f"Invalid metadata frame: {exc.errors()[0]['msg']}") from exc


def looks_like_metadata(message: Message) -> bool:
    """True when a message is shaped like a JSON object, valid or not."""

    return _as_bytes(message).lstrip()[:1] == b"{"


def iter_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Split a payload into ordered chunks of at most ``chunk_size`` bytes."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for offset in range(0, len(data), chunk_size):
        yield data[offset:offset + chunk_size]


def count_chunks(total_bytes: int, chunk_size: int = CHUNK_SIZE) -> int:
    return math.ceil(total_bytes / chunk_size) if total_bytes > 0 else 0
