"""Signaling transports for meshcall.

This package provides:
- base: the Transport contract consumed by the call session
- websocket: WebSocketTransport for the meshcall relay
- loopback: LoopbackHub/LoopbackTransport for in-process calls
"""

from meshcall.transport.base import Subscription, Transport
from meshcall.transport.loopback import LoopbackHub, LoopbackTransport
from meshcall.transport.websocket import WebSocketTransport

__all__ = [
    "Subscription",
    "Transport",
    "LoopbackHub",
    "LoopbackTransport",
    "WebSocketTransport",
]
