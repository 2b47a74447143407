"""Local media: the microphone, camera and screen tracks sent to every peer.

One ``LocalTrack`` per capture device is shared by all connections through
aiortc's ``MediaRelay``; each connection gets its own relay subscription so a
slow peer cannot stall the others. Camera and screen share use the same
outgoing video slot.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError

from meshcall.call.devices import MediaDevices

if TYPE_CHECKING:
    from meshcall.call.connection import AiortcConnection
    from meshcall.call.registry import PeerRegistry

logger = logging.getLogger(__name__)

AUDIO_SLOT = "audio"
VIDEO_SLOT = "video"

SOURCE_CAMERA = "camera"
SOURCE_SCREEN = "screen"


class LocalTrack(MediaStreamTrack):
    """Capture track with an ``enabled`` switch.

    A disabled audio track keeps producing frames, filled with silence, so
    muting never needs a renegotiation. Stopping the wrapper stops the device
    track; the device track ending on its own ends the wrapper.
    """

    def __init__(self, source: MediaStreamTrack, label: str = ""):
        super().__init__()
        self.kind = source.kind
        self.label = label or source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self.stop)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        frame = await self.source.recv()
        if not self.enabled and self.kind == "audio":
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        if self.readyState == "ended":
            return
        super().stop()
        self.source.stop()


@dataclass
class LocalMediaState:
    audio_track: Optional[LocalTrack] = None
    video_track: Optional[LocalTrack] = None
    video_source: Optional[str] = None
    is_muted: bool = False

    @property
    def is_screen_sharing(self) -> bool:
        return self.video_source == SOURCE_SCREEN and self.video_track is not None

    @property
    def is_video_enabled(self) -> bool:
        return self.video_source == SOURCE_CAMERA and self.video_track is not None


class LocalMediaController:
    """Owns the local tracks and mirrors them into every peer connection.

    Args:
        devices: Where capture tracks come from.
        on_change: Called after every change to the local media state.
    """

    def __init__(
        self,
        devices: MediaDevices,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.devices = devices
        self.on_change = on_change
        self.state = LocalMediaState()
        self._relay = MediaRelay()
        self._stopped = False

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    @property
    def stopped(self) -> bool:
        return self._stopped

    # ----- acquisition -----

    async def _open(self, opener, label: str) -> Optional[LocalTrack]:
        source = await opener()
        if self.stopped:
            # Left the call while the device was opening
            logger.info(f"Discarding {label} opened after media was stopped")
            source.stop()
            return None
        return LocalTrack(source, label=label)

    async def acquire_audio(self, registry: "PeerRegistry") -> None:
        """Open the microphone and send it to every peer.

        Raises:
            MediaAccessError: If the microphone cannot be opened.
        """
        track = await self._open(self.devices.open_audio, "microphone")
        if track is None:
            return
        track.enabled = not self.state.is_muted
        previous = self.state.audio_track
        self.state.audio_track = track
        self._place(AUDIO_SLOT, track, registry)
        if previous is not None:
            previous.stop()
        logger.info("Microphone on")
        self._changed()

    async def acquire_video(self, registry: "PeerRegistry") -> None:
        """Open the camera and send it in the video slot, replacing a screen share.

        Raises:
            MediaAccessError: If the camera cannot be opened.
        """
        await self._acquire_video_source(self.devices.open_camera, SOURCE_CAMERA, registry)

    async def acquire_screen_share(self, registry: "PeerRegistry") -> None:
        """Start screen capture and send it in the video slot, replacing the camera.

        Raises:
            MediaAccessError: If screen capture cannot be started.
        """
        await self._acquire_video_source(self.devices.open_screen, SOURCE_SCREEN, registry)

    async def _acquire_video_source(
        self, opener, source: str, registry: "PeerRegistry"
    ) -> None:
        track = await self._open(opener, source)
        if track is None:
            return

        previous = self.state.video_track
        self.state.video_track = track
        self.state.video_source = source
        self._place(VIDEO_SLOT, track, registry)
        track.source.on("ended", lambda: self._on_video_ended(track, registry))
        if previous is not None:
            previous.stop()
        logger.info(f"Sending {source} video")
        self._changed()

    def _place(self, slot: str, track: LocalTrack, registry: "PeerRegistry") -> None:
        for controller in registry.controllers():
            if controller.is_terminal:
                continue
            proxy = self._relay.subscribe(track, buffered=False)
            if controller.connection.set_track(slot, proxy):
                controller.request_renegotiation()

    # ----- removal -----

    def stop_video(self, registry: "PeerRegistry") -> None:
        """Stop sending the camera."""
        if self.state.video_source == SOURCE_CAMERA:
            self._stop_video_slot(registry)

    def stop_screen_share(self, registry: "PeerRegistry") -> None:
        """Stop sending the screen."""
        if self.state.video_source == SOURCE_SCREEN:
            self._stop_video_slot(registry)

    def _stop_video_slot(self, registry: "PeerRegistry") -> None:
        track = self.state.video_track
        source = self.state.video_source
        self.state.video_track = None
        self.state.video_source = None
        self._remove(VIDEO_SLOT, registry)
        if track is not None:
            track.stop()
        logger.info(f"Stopped {source} video")
        self._changed()

    def _remove(self, slot: str, registry: "PeerRegistry") -> None:
        for controller in registry.controllers():
            if controller.is_terminal:
                continue
            if controller.connection.remove_track(slot):
                controller.request_renegotiation()

    def _on_video_ended(self, track: LocalTrack, registry: "PeerRegistry") -> None:
        if self.state.video_track is not track:
            return
        logger.info(f"{self.state.video_source} capture ended")
        self._stop_video_slot(registry)

    # ----- other operations -----

    def toggle_mute(self) -> bool:
        """Flip the microphone on/off without renegotiating.

        Returns:
            The new muted state.
        """
        self.state.is_muted = not self.state.is_muted
        if self.state.audio_track is not None:
            self.state.audio_track.enabled = not self.state.is_muted
        logger.info("Muted" if self.state.is_muted else "Unmuted")
        self._changed()
        return self.state.is_muted

    def attach(self, connection: "AiortcConnection") -> None:
        """Add the current local tracks to a newly created connection."""
        for slot, track in (
            (AUDIO_SLOT, self.state.audio_track),
            (VIDEO_SLOT, self.state.video_track),
        ):
            if track is not None and track.readyState == "live":
                connection.set_track(slot, self._relay.subscribe(track, buffered=False))

    def stop_all(self) -> None:
        """Stop every local track. Later acquisitions are discarded."""
        self._stopped = True
        for track in (self.state.audio_track, self.state.video_track):
            if track is not None:
                track.stop()
        self.state = LocalMediaState(is_muted=self.state.is_muted)
        logger.debug("Stopped all local media")
        self._changed()
