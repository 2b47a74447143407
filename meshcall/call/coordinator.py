"""Call session coordinator.

``CallSession`` owns one call at a time: the room subscription, the peer
registry, the local media controller, and the observable ``CallState``.

Joining a room:
1. Open the microphone (and camera when asked).
2. Subscribe to ``call:{room}`` on the transport.
3. Broadcast ``Join``. Every participant already in the room answers the
   announcement by creating an initiator controller and sending an offer;
   this side creates responder controllers as the offers arrive.

Signals addressed to other participants are dropped. A peer failure removes
only that peer; losing the transport ends the call with an error status.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from meshcall.call.connection import AiortcConnection
from meshcall.call.devices import FFmpegDevices, MediaDevices
from meshcall.call.media import LocalMediaController
from meshcall.call.peer_controller import (
    PeerController,
    StartNegotiation,
    event_for_signal,
)
from meshcall.call.registry import PeerRegistry
from meshcall.call.state import CallState, CallStatus, LocalMediaView, ParticipantState
from meshcall.config import Config, get_config
from meshcall.errors import MediaAccessError, ProtocolError, TransportError
from meshcall.identity import StaticIdentity
from meshcall.protocol import (
    EVENT_JOIN,
    EVENT_LEAVE,
    EVENT_SIGNAL,
    Candidate,
    Join,
    Leave,
    Offer,
    Signal,
    addressed_to,
    channel_for_room,
    decode,
    encode,
)
from meshcall.transport.base import Subscription, Transport

logger = logging.getLogger(__name__)

MICROPHONE_ERROR = "Microphone access denied or error."
CONNECT_ERROR = "Could not connect to the call."
CONNECTION_LOST = "Connection to the call was lost."

# Candidates held per unknown sender until its offer arrives
MAX_EARLY_CANDIDATES = 32

StateListener = Callable[[CallState], None]


class CallSession:
    """Group call in a full mesh of peer connections.

    Args:
        transport: Broadcast transport used for signaling.
        identity: Provider of the local participant.
        devices: Capture devices. Defaults to ffmpeg devices from the config.
        config: Settings. Defaults to the global config.
        connection_factory: Builds the connection for a new peer. Defaults to
            an ``AiortcConnection`` with the configured ICE servers.
    """

    def __init__(
        self,
        transport: Transport,
        identity: StaticIdentity,
        devices: Optional[MediaDevices] = None,
        config: Optional[Config] = None,
        connection_factory: Optional[Callable[[], AiortcConnection]] = None,
    ):
        self.transport = transport
        self.config = config or get_config()
        self.participant = identity.get_current_participant()
        self.devices = devices or FFmpegDevices(self.config.media)
        self.connection_factory = connection_factory or self._default_connection

        self.room_key: Optional[str] = None
        self.registry = PeerRegistry()
        self.media: Optional[LocalMediaController] = None
        self.subscription: Optional[Subscription] = None

        self._in_call = False
        self._status = CallStatus.IDLE
        self._message: Optional[str] = None
        self._state = CallState()
        self._listeners: List[StateListener] = []
        self._early_candidates: Dict[str, List[Candidate]] = {}

        for event in (EVENT_JOIN, EVENT_LEAVE, EVENT_SIGNAL):
            transport.on_broadcast(event, partial(self._on_broadcast, event))
        transport.on_disconnect(self._on_transport_lost)

    def _default_connection(self) -> AiortcConnection:
        return AiortcConnection(ice_servers=self.config.ice_servers)

    @property
    def participant_id(self) -> str:
        return self.participant.id

    @property
    def in_call(self) -> bool:
        return self._in_call

    # ----- observable state -----

    @property
    def state(self) -> CallState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with every new CallState.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_status(self, status: CallStatus, message: Optional[str] = None) -> None:
        self._status = status
        self._message = message
        self._publish()

    def _publish(self) -> None:
        local = LocalMediaView()
        if self.media is not None:
            media_state = self.media.state
            local = LocalMediaView(
                is_muted=media_state.is_muted,
                is_video_enabled=media_state.is_video_enabled,
                is_screen_sharing=media_state.is_screen_sharing,
            )

        state = CallState(
            status=self._status,
            participants=tuple(
                ParticipantState(
                    id=entry.participant_id,
                    has_video=entry.has_live_video,
                    stream=entry.stream,
                )
                for entry in self.registry
            ),
            local=local,
            message=self._message,
        )
        if state == self._state:
            return

        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Call state listener failed")

    # ----- join / leave -----

    async def join(self, room_key: str, video: bool = False) -> None:
        """Join a call room.

        Args:
            room_key: Room to join.
            video: Also send the camera. A camera that cannot be opened does
                not prevent joining.

        Raises:
            RuntimeError: If already in a call.
            MediaAccessError: If the microphone cannot be opened.
            TransportError: If the room subscription cannot be established.
        """
        if self._in_call:
            raise RuntimeError(f"Already in call {self.room_key}")

        channel = channel_for_room(room_key)
        self.room_key = room_key
        self._in_call = True
        self.registry = PeerRegistry(listener=self._publish)
        self._early_candidates.clear()
        self.media = LocalMediaController(self.devices, on_change=self._publish)
        self._set_status(CallStatus.CONNECTING)
        logger.info(f"Joining room {room_key} as {self.participant_id}")

        try:
            await self.media.acquire_audio(self.registry)
        except MediaAccessError as e:
            logger.error(f"Cannot open microphone: {e}")
            self._abort(MICROPHONE_ERROR)
            raise

        if video:
            try:
                await self.media.acquire_video(self.registry)
            except MediaAccessError as e:
                logger.warning(f"Joining without camera: {e}")

        if not self._in_call:
            return

        try:
            subscription = await self.transport.subscribe(channel)
        except TransportError as e:
            logger.error(f"Cannot subscribe to {channel}: {e}")
            self._abort(CONNECT_ERROR)
            raise

        if not self._in_call:
            # Left while the subscription was being established
            await self.transport.unsubscribe(subscription)
            return

        self.subscription = subscription
        self._set_status(CallStatus.CONNECTED)
        try:
            await self._broadcast(Join(participant_id=self.participant_id))
        except TransportError as e:
            logger.error(f"Cannot announce presence in {room_key}: {e}")
            self._abort(CONNECT_ERROR)
            raise
        logger.info(f"Joined room {room_key}")

    def _teardown(self) -> List[PeerController]:
        self._early_candidates.clear()
        self._in_call = False
        controllers = self.registry.controllers()
        for controller in controllers:
            controller.close()
        if self.media is not None:
            self.media.stop_all()
        return controllers

    def _abort(self, message: str) -> None:
        self._teardown()
        self.subscription = None
        self._set_status(CallStatus.ERROR, message)

    async def leave(self) -> None:
        """Leave the call. Safe to call more than once."""
        if not self._in_call:
            return

        logger.info(f"Leaving room {self.room_key}")
        controllers = self._teardown()
        subscription, self.subscription = self.subscription, None
        self._set_status(CallStatus.IDLE)

        if subscription is not None:
            try:
                await self._broadcast(Leave(participant_id=self.participant_id))
            except TransportError as e:
                logger.debug(f"Could not announce departure: {e}")
            try:
                await self.transport.unsubscribe(subscription)
            except TransportError as e:
                logger.debug(f"Could not unsubscribe cleanly: {e}")

        if controllers:
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        *(controller.wait_closed() for controller in controllers),
                        return_exceptions=True,
                    ),
                    timeout=self.config.negotiation_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out closing peer connections")

    def _on_transport_lost(self, error: Optional[Exception]) -> None:
        if not self._in_call:
            return
        logger.error(f"Lost signaling transport: {error}")
        self._abort(CONNECTION_LOST)

    # ----- inbound -----

    def _on_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        if not self._in_call or self.subscription is None:
            return
        try:
            envelope = decode(event, payload)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed {event} broadcast: {e}")
            return

        if isinstance(envelope, Join):
            self.on_join_announcement(envelope.participant_id)
        elif isinstance(envelope, Leave):
            self.on_leave_announcement(envelope.participant_id)
        else:
            self.on_signaling_envelope(envelope)

    def on_join_announcement(self, participant_id: str) -> None:
        """Connect to a participant that announced itself, as the initiator."""
        if participant_id == self.participant_id:
            return

        entry = self.registry.get(participant_id)
        if entry is not None:
            if not entry.controller.is_stale:
                logger.debug(f"Already connected to {participant_id}")
                return
            logger.info(f"Replacing stale connection to {participant_id}")
            entry.controller.close()

        logger.info(f"{participant_id} joined")
        controller = self._create_peer(participant_id, is_initiator=True)
        controller.submit(StartNegotiation())

    def on_leave_announcement(self, participant_id: str) -> None:
        self._early_candidates.pop(participant_id, None)
        entry = self.registry.get(participant_id)
        if entry is None:
            return
        logger.info(f"{participant_id} left")
        entry.controller.close()

    def on_signaling_envelope(self, signal: Signal) -> None:
        """Route a signal to its peer.

        An offer from an unknown sender creates a responder. Candidates from
        an unknown sender are held until its offer arrives; answers from an
        unknown sender belong to a closed peer and are dropped.
        """
        if not addressed_to(signal, self.participant_id) or signal.sender == self.participant_id:
            return

        entry = self.registry.get(signal.sender)
        if entry is not None:
            entry.controller.submit(event_for_signal(signal))
            return

        if isinstance(signal, Candidate):
            held = self._early_candidates.setdefault(signal.sender, [])
            redelivered = any(c.key == signal.key for c in held)
            if not redelivered and len(held) < MAX_EARLY_CANDIDATES:
                held.append(signal)
            return
        if not isinstance(signal, Offer):
            logger.debug(f"Dropping {type(signal).__name__} from unknown peer {signal.sender}")
            return

        controller = self._create_peer(signal.sender, is_initiator=False)
        for candidate in self._early_candidates.pop(signal.sender, []):
            controller.submit(event_for_signal(candidate))
        controller.submit(event_for_signal(signal))

    def _create_peer(self, participant_id: str, is_initiator: bool) -> PeerController:
        controller = PeerController(
            participant_id,
            self.participant_id,
            self.connection_factory(),
            self.registry,
            self._send_signal,
            is_initiator=is_initiator,
            negotiation_timeout=self.config.negotiation_timeout,
            ice_restart_timeout=self.config.ice_restart_timeout,
            max_ice_restarts=self.config.max_ice_restarts,
            on_failed=self._on_peer_failed,
        )
        self.media.attach(controller.connection)
        self.registry.insert(controller)
        return controller

    def _on_peer_failed(self, controller: PeerController, error: Exception) -> None:
        logger.warning(f"Dropped {controller.participant_id}: {error}")

    # ----- outbound -----

    async def _broadcast(self, envelope) -> None:
        event, payload = encode(envelope)
        await self.transport.send(event, payload)

    async def _send_signal(self, signal: Signal) -> None:
        if self.subscription is None:
            logger.debug(f"Not in a room, dropping {type(signal).__name__}")
            return
        await self._broadcast(signal)

    # ----- actions -----

    def _require_media(self) -> LocalMediaController:
        if not self._in_call or self.media is None or self.media.stopped:
            raise RuntimeError("Not in a call")
        return self.media

    def toggle_mute(self) -> bool:
        """Mute or unmute the microphone. Returns the new muted state."""
        return self._require_media().toggle_mute()

    async def toggle_video(self) -> None:
        """Start or stop the camera.

        Raises:
            MediaAccessError: If the camera cannot be opened.
        """
        media = self._require_media()
        if media.state.is_video_enabled:
            media.stop_video(self.registry)
        else:
            await media.acquire_video(self.registry)

    async def toggle_screen_share(self) -> None:
        """Start or stop sharing the screen.

        Raises:
            MediaAccessError: If screen capture cannot be started.
        """
        media = self._require_media()
        if media.state.is_screen_sharing:
            media.stop_screen_share(self.registry)
        else:
            await media.acquire_screen_share(self.registry)

    async def settle(self, timeout: float = 5.0) -> None:
        """Wait until no peer has queued signaling work."""

        async def drain():
            while True:
                tasks = [
                    task
                    for controller in self.registry.controllers()
                    for task in controller.pending_tasks
                ]
                if not tasks:
                    return
                await asyncio.gather(*tasks, return_exceptions=True)

        await asyncio.wait_for(drain(), timeout=timeout)
