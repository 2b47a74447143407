"""Observable call state exposed to the UI."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple


class CallStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class ParticipantState:
    """A remote participant as shown by the UI.

    Attributes:
        id: Participant id.
        has_video: Whether a live video track is being received.
        stream: Live remote tracks, or None before any arrived.
    """

    id: str
    has_video: bool = False
    stream: Optional[Tuple[Any, ...]] = None


@dataclass(frozen=True)
class LocalMediaView:
    is_muted: bool = False
    is_video_enabled: bool = False
    is_screen_sharing: bool = False


@dataclass(frozen=True)
class CallState:
    """Snapshot of the call, replaced on every change."""

    status: CallStatus = CallStatus.IDLE
    participants: Tuple[ParticipantState, ...] = ()
    local: LocalMediaView = field(default_factory=LocalMediaView)
    message: Optional[str] = None

    @property
    def participant_ids(self) -> Tuple[str, ...]:
        return tuple(p.id for p in self.participants)

    def participant(self, participant_id: str) -> Optional[ParticipantState]:
        for participant in self.participants:
            if participant.id == participant_id:
                return participant
        return None
