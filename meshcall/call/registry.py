"""Peer registry: the call session's arena of peer controllers.

Maps participant id to a ``PeerEntry`` holding the controller and the derived
``has_live_video`` flag. The registry is owned by the call session and passed
explicitly to every controller and media operation.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional, Tuple

from aiortc import MediaStreamTrack

if TYPE_CHECKING:
    from meshcall.call.peer_controller import PeerController

logger = logging.getLogger(__name__)


@dataclass
class PeerEntry:
    """Registry entry for one remote participant."""

    controller: "PeerController"
    has_live_video: bool = False

    @property
    def participant_id(self) -> str:
        return self.controller.participant_id

    @property
    def stream(self) -> Optional[Tuple[MediaStreamTrack, ...]]:
        """Live remote tracks, or None before any track arrived."""
        tracks = tuple(
            track
            for track in self.controller.remote_tracks.values()
            if track.readyState == "live"
        )
        return tracks or None


class PeerRegistry:
    """participant id -> PeerEntry, with a change listener."""

    def __init__(self, listener: Optional[Callable[[], None]] = None):
        self._entries: Dict[str, PeerEntry] = {}
        self.listener = listener

    def _changed(self) -> None:
        if self.listener is not None:
            self.listener()

    def insert(self, controller: "PeerController") -> PeerEntry:
        """Register a controller.

        Raises:
            ValueError: If the participant already has a registered controller.
        """
        participant_id = controller.participant_id
        if participant_id in self._entries:
            raise ValueError(f"Peer {participant_id} is already registered")
        entry = PeerEntry(controller=controller)
        self._entries[participant_id] = entry
        self._recompute(entry)
        logger.debug(f"Registered peer {participant_id} (total: {len(self._entries)})")
        self._changed()
        return entry

    def refresh(self, participant_id: str) -> None:
        """Recompute derived flags after a remote track change."""
        entry = self._entries.get(participant_id)
        if entry is None:
            return
        self._recompute(entry)
        self._changed()

    @staticmethod
    def _recompute(entry: PeerEntry) -> None:
        entry.has_live_video = any(
            track.kind == "video" and track.readyState == "live"
            for track in entry.controller.remote_tracks.values()
        )

    def remove(
        self, participant_id: str, controller: Optional["PeerController"] = None
    ) -> bool:
        """Remove a participant's entry.

        Args:
            participant_id: Participant to remove.
            controller: If given, only remove the entry when it still holds
                this controller, so a replaced controller cannot evict its
                successor.

        Returns:
            True if an entry was removed.
        """
        entry = self._entries.get(participant_id)
        if entry is None:
            return False
        if controller is not None and entry.controller is not controller:
            return False
        del self._entries[participant_id]
        logger.debug(f"Removed peer {participant_id} (remaining: {len(self._entries)})")
        self._changed()
        return True

    def get(self, participant_id: str) -> Optional[PeerEntry]:
        return self._entries.get(participant_id)

    def controllers(self) -> List["PeerController"]:
        return [entry.controller for entry in self._entries.values()]

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PeerEntry]:
        return iter(list(self._entries.values()))
