"""Signaling protocol for meshcall group calls.

This module defines the envelopes exchanged between call participants over the
room's broadcast channel, and their wire encoding.

Channel
-------

Every participant of room ``r1`` subscribes to the broadcast channel
``call:r1``. The transport delivers each broadcast to every subscriber,
including the sender, at least once and without ordering guarantees across
senders.

Broadcast Events
----------------

**join**
    Sent by: a participant whose subscription just became active
    Payload: ``{"userId": "<participant id>"}``
    Effect: every other participant creates a peer connection in the
    initiator role and sends an offer.

**leave**
    Sent by: a participant leaving the call
    Payload: ``{"userId": "<participant id>"}``
    Effect: every other participant closes its peer connection to the sender.

**signal**
    Sent by: a peer connection controller
    Payload: ``{"to": id, "from": id, "type": kind, "data": {...}}``
    Kinds:

    - ``offer``: ``data = {"type": "offer", "sdp": "...", "iceRestart": bool}``
    - ``answer``: ``data = {"type": "answer", "sdp": "..."}``
    - ``candidate``: ``data = {"candidate": "candidate:...", "sdpMid": "0",
      "sdpMLineIndex": 0}``

    Receivers drop signals whose ``to`` is not their own participant id.

Message Flow Example
--------------------

1. A → all: join {userId: A}          (A is alone, nothing happens)
2. B → all: join {userId: B}
3. A → B:   signal offer              (A is the initiator for B)
4. B → A:   signal answer
5. A ↔ B:   signal candidate ...      (trickled, may arrive before the offer)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from meshcall.errors import ProtocolError

# Broadcast event names
EVENT_JOIN = "join"
EVENT_LEAVE = "leave"
EVENT_SIGNAL = "signal"

# Signal kinds
SIGNAL_OFFER = "offer"
SIGNAL_ANSWER = "answer"
SIGNAL_CANDIDATE = "candidate"

CHANNEL_PREFIX = "call:"


def channel_for_room(room_key: str) -> str:
    """Get the broadcast channel name for a room key."""
    if not room_key:
        raise ValueError("Room key cannot be empty")
    return f"{CHANNEL_PREFIX}{room_key}"


@dataclass(frozen=True)
class Join:
    """Presence announcement of a participant that just subscribed."""

    participant_id: str


@dataclass(frozen=True)
class Leave:
    """Departure announcement of a participant."""

    participant_id: str


@dataclass(frozen=True)
class Offer:
    """Session description offer addressed to one participant."""

    sender: str
    target: str
    sdp: str
    ice_restart: bool = False


@dataclass(frozen=True)
class Answer:
    """Session description answer addressed to one participant."""

    sender: str
    target: str
    sdp: str


@dataclass(frozen=True)
class Candidate:
    """Trickled ICE candidate addressed to one participant.

    Attributes:
        candidate: Dict with ``candidate``, ``sdpMid`` and ``sdpMLineIndex``.
    """

    sender: str
    target: str
    candidate: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[Any, Any, Any]:
        """Identity of the candidate, used to drop redelivered copies."""
        return candidate_key(self.candidate)


def candidate_key(candidate: Dict[str, Any]) -> Tuple[Any, Any, Any]:
    """Identity of a candidate dict: its text, media id and line index."""
    return (
        candidate.get("candidate"),
        candidate.get("sdpMid"),
        candidate.get("sdpMLineIndex"),
    )


Signal = Union[Offer, Answer, Candidate]
Envelope = Union[Join, Leave, Offer, Answer, Candidate]


def encode(envelope: Envelope) -> Tuple[str, Dict[str, Any]]:
    """Encode an envelope into a broadcast ``(event, payload)`` pair.

    Args:
        envelope: Envelope to encode.

    Returns:
        Tuple of broadcast event name and JSON-serializable payload.
    """
    if isinstance(envelope, Join):
        return EVENT_JOIN, {"userId": envelope.participant_id}
    if isinstance(envelope, Leave):
        return EVENT_LEAVE, {"userId": envelope.participant_id}

    if isinstance(envelope, Offer):
        kind = SIGNAL_OFFER
        data: Dict[str, Any] = {"type": SIGNAL_OFFER, "sdp": envelope.sdp}
        if envelope.ice_restart:
            data["iceRestart"] = True
    elif isinstance(envelope, Answer):
        kind = SIGNAL_ANSWER
        data = {"type": SIGNAL_ANSWER, "sdp": envelope.sdp}
    elif isinstance(envelope, Candidate):
        kind = SIGNAL_CANDIDATE
        data = dict(envelope.candidate)
    else:
        raise TypeError(f"Cannot encode {type(envelope).__name__}")

    return EVENT_SIGNAL, {
        "to": envelope.target,
        "from": envelope.sender,
        "type": kind,
        "data": data,
    }


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"Missing or invalid '{key}' in payload")
    return value


def decode(event: str, payload: Any) -> Envelope:
    """Decode a broadcast ``(event, payload)`` pair into an envelope.

    Args:
        event: Broadcast event name.
        payload: Broadcast payload as received from the transport.

    Returns:
        The decoded envelope.

    Raises:
        ProtocolError: If the event is unknown or the payload is malformed.
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"Payload for '{event}' must be an object")

    if event == EVENT_JOIN:
        return Join(participant_id=_require_str(payload, "userId"))
    if event == EVENT_LEAVE:
        return Leave(participant_id=_require_str(payload, "userId"))
    if event != EVENT_SIGNAL:
        raise ProtocolError(f"Unknown broadcast event: {event}")

    sender = _require_str(payload, "from")
    target = _require_str(payload, "to")
    kind = payload.get("type")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise ProtocolError(f"Signal '{kind}' from {sender} has no data")

    if kind == SIGNAL_OFFER:
        return Offer(
            sender=sender,
            target=target,
            sdp=_require_str(data, "sdp"),
            ice_restart=bool(data.get("iceRestart", False)),
        )
    if kind == SIGNAL_ANSWER:
        return Answer(sender=sender, target=target, sdp=_require_str(data, "sdp"))
    if kind == SIGNAL_CANDIDATE:
        return Candidate(
            sender=sender,
            target=target,
            candidate={
                "candidate": data.get("candidate") or "",
                "sdpMid": data.get("sdpMid"),
                "sdpMLineIndex": data.get("sdpMLineIndex"),
            },
        )
    raise ProtocolError(f"Unknown signal type: {kind}")


def addressed_to(envelope: Envelope, participant_id: str) -> Optional[bool]:
    """Check whether a signal is addressed to a participant.

    Returns:
        None for broadcast envelopes (Join/Leave), otherwise whether the
        envelope's target is ``participant_id``.
    """
    if isinstance(envelope, (Join, Leave)):
        return None
    return envelope.target == participant_id
