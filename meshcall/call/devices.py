"""Capture devices for local media.

``FFmpegDevices`` opens the microphone, camera and screen through aiortc's
``MediaPlayer`` with the formats from ``MediaDeviceConfig``.
``SyntheticDevices`` produces aiortc's generated silence and test-pattern
tracks, for machines without capture hardware and for tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import partial
from typing import Dict, Iterable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from av.error import FFmpegError

from meshcall.config import MediaDeviceConfig
from meshcall.errors import MediaAccessError

logger = logging.getLogger(__name__)

MICROPHONE = "microphone"
CAMERA = "camera"
SCREEN = "screen"


class MediaDevices(ABC):
    """Source of capture tracks. Every opener raises MediaAccessError on failure."""

    @abstractmethod
    async def open_audio(self) -> MediaStreamTrack:
        """Open the microphone."""

    @abstractmethod
    async def open_camera(self) -> MediaStreamTrack:
        """Open the camera."""

    @abstractmethod
    async def open_screen(self) -> MediaStreamTrack:
        """Start screen capture."""


class FFmpegDevices(MediaDevices):
    """Capture devices opened through ffmpeg."""

    def __init__(self, config: MediaDeviceConfig):
        self.config = config

    async def open_audio(self) -> MediaStreamTrack:
        return await self._open(
            MICROPHONE, self.config.audio_device, self.config.audio_format, {}, "audio"
        )

    async def open_camera(self) -> MediaStreamTrack:
        return await self._open(
            CAMERA,
            self.config.camera_device,
            self.config.camera_format,
            self.config.camera_options,
            "video",
        )

    async def open_screen(self) -> MediaStreamTrack:
        return await self._open(
            SCREEN,
            self.config.screen_device,
            self.config.screen_format,
            self.config.screen_options,
            "video",
        )

    async def _open(
        self,
        name: str,
        device: str,
        fmt: str,
        options: Dict[str, str],
        kind: str,
    ) -> MediaStreamTrack:
        logger.info(f"Opening {name}: {device} ({fmt})")
        try:
            # Opening the ffmpeg input blocks until the device answers
            loop = asyncio.get_running_loop()
            player = await loop.run_in_executor(
                None, partial(MediaPlayer, device, format=fmt, options=dict(options))
            )
        except (FFmpegError, OSError, ValueError) as e:
            raise MediaAccessError(f"Cannot open {name} {device}: {e}", device=name) from e

        track = player.audio if kind == "audio" else player.video
        if track is None:
            raise MediaAccessError(f"{name} {device} has no {kind} stream", device=name)
        return track


class SyntheticDevices(MediaDevices):
    """Generated tracks: silence for audio, a test pattern for video.

    Args:
        unavailable: Device names (microphone, camera, screen) that behave as
            if access was denied.
    """

    def __init__(self, unavailable: Optional[Iterable[str]] = None):
        self.unavailable = set(unavailable or ())

    def _check(self, name: str) -> None:
        if name in self.unavailable:
            raise MediaAccessError(f"Access to {name} denied", device=name)

    async def open_audio(self) -> MediaStreamTrack:
        self._check(MICROPHONE)
        return AudioStreamTrack()

    async def open_camera(self) -> MediaStreamTrack:
        self._check(CAMERA)
        return VideoStreamTrack()

    async def open_screen(self) -> MediaStreamTrack:
        self._check(SCREEN)
        return VideoStreamTrack()
