"""Inbound events shared by the signaling client, direct channels and sessions."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    # broker-pushed
    PEER_JOINED = "peer-joined"
    PEER_DISCONNECTED = "peer-disconnected"
    ROOM_EXPIRED = "room-expired"
    SIGNAL = "signal"
    TRANSPORT_LOST = "transport-lost"
    # direct channel
    CHANNEL_CONNECT = "channel-connect"
    CHANNEL_DATA = "channel-data"
    CHANNEL_CLOSE = "channel-close"
    CHANNEL_ERROR = "channel-error"


BROKER_EVENTS = frozenset(
    {
        EventKind.PEER_JOINED,
        EventKind.PEER_DISCONNECTED,
        EventKind.ROOM_EXPIRED,
        EventKind.SIGNAL,
        EventKind.TRANSPORT_LOST,
    }
)


@dataclass(slots=True)
class SessionEvent:
    """A single inbound event consumed by a transfer session loop."""

    kind: EventKind
    code: str | None = None
    payload: Any = None
    peer_id: str | None = None
    error: BaseException | None = field(default=None, repr=False)
    source: Any = field(default=None, repr=False)
