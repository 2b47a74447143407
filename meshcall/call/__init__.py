"""Group call orchestration.

This package provides:
- coordinator: CallSession, the entry point for joining and leaving a room
- peer_controller: negotiation state machine for one remote participant
- media: local capture tracks shared by every peer connection
- registry: the session's table of peer controllers
- connection: aiortc-backed connection object behind each peer
- devices: capture device providers
- state: observable call state
"""

from meshcall.call.connection import AiortcConnection
from meshcall.call.coordinator import CallSession
from meshcall.call.devices import FFmpegDevices, MediaDevices, SyntheticDevices
from meshcall.call.media import LocalMediaController, LocalTrack
from meshcall.call.peer_controller import NegotiationState, PeerController
from meshcall.call.registry import PeerEntry, PeerRegistry
from meshcall.call.state import CallState, CallStatus, LocalMediaView, ParticipantState

__all__ = [
    "AiortcConnection",
    "CallSession",
    "FFmpegDevices",
    "MediaDevices",
    "SyntheticDevices",
    "LocalMediaController",
    "LocalTrack",
    "NegotiationState",
    "PeerController",
    "PeerEntry",
    "PeerRegistry",
    "CallState",
    "CallStatus",
    "LocalMediaView",
    "ParticipantState",
]
