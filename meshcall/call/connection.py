"""Connection object behind each peer, backed by aiortc.

``AiortcConnection`` narrows ``RTCPeerConnection`` to the operations the peer
controller drives, and reports what happens underneath as events:

- ``track`` (track): the remote side started sending ``track``
- ``trackended`` (track): the remote side stopped sending ``track``
- ``icestatechange`` (state): ICE connection state of the current transport
- ``icecandidate`` (candidate dict): a trickled local candidate

aiortc gathers all candidates before ``setLocalDescription`` returns and puts
them in the SDP, so ``icecandidate`` is never emitted here. Inbound trickled
candidates (e.g. from browser participants) are still applied.

aiortc has no SDP rollback and no ICE restart. Both are done by rebuilding the
underlying RTCPeerConnection with the same local tracks: the pending local
offer is discarded together with the old transport.
"""

import logging
from typing import Any, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCRtpTransceiver,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)

RECEIVING_DIRECTIONS = ("sendrecv", "recvonly")


class AiortcConnection(AsyncIOEventEmitter):
    """One media session with one remote participant.

    Local tracks live in named slots ("audio", "video"); each slot owns at
    most one sender, and replacing a slot's track reuses that sender.

    Attributes:
        ice_servers: ICE server dicts (``urls``, optional ``username`` and
            ``credential``) used for every underlying RTCPeerConnection.
        pc: Current RTCPeerConnection.
    """

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        self.ice_servers = list(ice_servers or [])
        self._local_tracks: Dict[str, Optional[MediaStreamTrack]] = {}
        self._senders: Dict[str, RTCRtpSender] = {}
        self._remote_tracks: Dict[str, MediaStreamTrack] = {}
        self.pc = self._build()

    def _build(self) -> RTCPeerConnection:
        config = RTCConfiguration(
            iceServers=[RTCIceServer(**server) for server in self.ice_servers]
        )
        pc = RTCPeerConnection(configuration=config)

        @pc.on("iceconnectionstatechange")
        def on_ice_state_change():
            # Ignore transports replaced by a rebuild
            if pc is self.pc:
                self.emit("icestatechange", pc.iceConnectionState)

        self._senders = {}
        for slot, track in self._local_tracks.items():
            if track is not None:
                self._senders[slot] = pc.addTrack(track)
        return pc

    async def _rebuild(self) -> None:
        old = self.pc
        for track in list(self._remote_tracks.values()):
            self.emit("trackended", track)
        self._remote_tracks.clear()
        self.pc = self._build()
        await old.close()
        logger.debug("Rebuilt peer connection")

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def ice_state(self) -> str:
        return self.pc.iceConnectionState

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    # ----- negotiation -----

    async def create_offer(self, ice_restart: bool = False) -> str:
        """Create an offer, apply it locally, and return its SDP."""
        if ice_restart:
            await self._rebuild()
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self.pc.localDescription.sdp

    async def apply_offer(self, sdp: str, ice_restart: bool = False) -> None:
        """Apply a remote offer."""
        if ice_restart or self.pc.iceConnectionState in ("failed", "closed"):
            await self._rebuild()
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))

    async def create_answer(self) -> str:
        """Create an answer to the applied remote offer, apply it, return its SDP."""
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        self._sync_remote_tracks()
        return self.pc.localDescription.sdp

    async def apply_answer(self, sdp: str) -> None:
        """Apply a remote answer to the pending local offer."""
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        self._sync_remote_tracks()

    async def rollback(self) -> None:
        """Discard the pending local offer."""
        if self.signaling_state == "have-local-offer":
            await self._rebuild()

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        """Add a trickled remote ICE candidate.

        Args:
            candidate: Dict with ``candidate``, ``sdpMid`` and ``sdpMLineIndex``.
                An empty ``candidate`` marks the end of candidates.
        """
        text = candidate.get("candidate") or ""
        if not text:
            logger.debug("Received end-of-candidates")
            return
        if text.startswith("candidate:"):
            text = text.split(":", 1)[1]
        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    # ----- local tracks -----

    def _transceiver_for(self, sender: RTCRtpSender) -> RTCRtpTransceiver:
        for transceiver in self.pc.getTransceivers():
            if transceiver.sender is sender:
                return transceiver
        raise LookupError("Sender has no transceiver")

    def set_track(self, slot: str, track: MediaStreamTrack) -> bool:
        """Send ``track`` in ``slot``, replacing the slot's current track in place.

        Returns:
            True if the change needs a renegotiation (new sender, or a sender
            that was not sending), False for an in-place replacement.
        """
        previous = self.local_track(slot)
        self._local_tracks[slot] = track

        sender = self._senders.get(slot)
        if sender is None:
            self._senders[slot] = self.pc.addTrack(track)
            needs_negotiation = True
        else:
            transceiver = self._transceiver_for(sender)
            sender.replaceTrack(track)
            needs_negotiation = transceiver.direction not in ("sendrecv", "sendonly")
            if needs_negotiation:
                transceiver.direction = "sendrecv"

        if previous is not None and previous is not track:
            previous.stop()
        return needs_negotiation

    def remove_track(self, slot: str) -> bool:
        """Stop sending in ``slot``.

        Returns:
            True if a sender stopped sending and the change needs renegotiation.
        """
        previous = self.local_track(slot)
        self._local_tracks[slot] = None

        sender = self._senders.get(slot)
        needs_negotiation = False
        if sender is not None:
            transceiver = self._transceiver_for(sender)
            sender.replaceTrack(None)
            if transceiver.direction in ("sendrecv", "sendonly"):
                transceiver.direction = (
                    "recvonly" if transceiver.direction == "sendrecv" else "inactive"
                )
                needs_negotiation = True

        if previous is not None:
            previous.stop()
        return needs_negotiation

    def local_track(self, slot: str) -> Optional[MediaStreamTrack]:
        return self._local_tracks.get(slot)

    # ----- remote tracks -----

    def _sync_remote_tracks(self) -> None:
        """Emit track/trackended from the negotiated transceiver directions."""
        receiving = set()
        for transceiver in self.pc.getTransceivers():
            track = transceiver.receiver.track
            if track is None or transceiver.currentDirection not in RECEIVING_DIRECTIONS:
                continue
            receiving.add(track.id)
            if track.id not in self._remote_tracks:
                self._remote_tracks[track.id] = track
                self.emit("track", track)

        for track_id in list(self._remote_tracks):
            if track_id not in receiving:
                self.emit("trackended", self._remote_tracks.pop(track_id))

    async def close(self) -> None:
        for track in self._local_tracks.values():
            if track is not None:
                track.stop()
        self._local_tracks.clear()
        self._remote_tracks.clear()
        await self.pc.close()
