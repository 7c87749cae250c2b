"""Expose direct peer channel implementations."""
from .base import ChannelFactory, ChannelRole, PeerChannel, SignalCallback
from .loopback import LoopbackChannel, LoopbackNetwork
from .tcp import TcpChannel, tcp_channel_factory

__all__ = [
    "ChannelFactory",
    "ChannelRole",
    "LoopbackChannel",
    "LoopbackNetwork",
    "PeerChannel",
    "SignalCallback",
    "TcpChannel",
    "tcp_channel_factory",
]
