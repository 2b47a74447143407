"""Participant identity for group calls.

The identity system itself is external; the call session only needs
``get_current_participant()``. ``StaticIdentity`` serves the CLI and tests.
"""

import uuid
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Participant:
    """A call participant.

    Attributes:
        id: Opaque identifier, stable for the duration of the call.
        display_name: Human-readable name.
    """

    id: str
    display_name: str = ""


class StaticIdentity:
    """Identity provider returning a fixed participant."""

    def __init__(
        self, participant_id: Optional[str] = None, display_name: Optional[str] = None
    ):
        participant_id = participant_id or uuid.uuid4().hex
        self._participant = Participant(
            id=participant_id,
            display_name=display_name or f"User {participant_id[:4]}",
        )

    def get_current_participant(self) -> Participant:
        return self._participant
