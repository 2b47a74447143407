"""Peer connection controller: the per-participant negotiation state machine.

States:
    new → have-local-offer → stable        (initiator)
    new → have-remote-offer → stable       (responder)
    stable → have-local-offer → stable     (renegotiation, ICE restart)
    any → failed | closed                  (terminal)

Every event goes through ``dispatch``. Events for one peer run one at a time;
events for different peers interleave on the event loop. Each connection
operation is a suspension point, so handlers re-check for a terminal state
after every ``await``.

Glare (both sides have a local offer outstanding) is resolved by participant
id: the side with the lower id is polite, rolls back its own offer and answers
the remote one. The other side ignores the colliding offer and waits for that
answer.

Failure handling:
- Malformed descriptions, illegal transitions and timeouts raise
  NegotiationError; the peer is failed and removed from the registry.
- ICE failed/disconnected on the initiator triggers an ICE restart offer, up to
  ``max_ice_restarts``. The responder waits ``ice_restart_timeout`` for the
  restart to reconnect. Otherwise IceFailure fails the peer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set

from meshcall.errors import IceFailure, NegotiationError
from meshcall.protocol import Answer, Candidate, Offer, Signal, candidate_key

if TYPE_CHECKING:
    from aiortc import MediaStreamTrack
    from meshcall.call.connection import AiortcConnection
    from meshcall.call.registry import PeerRegistry

logger = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({NegotiationState.FAILED, NegotiationState.CLOSED})
OFFER_STATES = frozenset({NegotiationState.NEW, NegotiationState.STABLE})

CONNECTED_ICE_STATES = ("connected", "completed")
BROKEN_ICE_STATES = ("failed", "disconnected")
STALE_ICE_STATES = ("failed", "closed")


# ----- events -----


@dataclass(frozen=True)
class StartNegotiation:
    """Initial offer from the initiator."""


@dataclass(frozen=True)
class NegotiationNeeded:
    """The local track set changed."""


@dataclass(frozen=True)
class RemoteOffer:
    sdp: str
    ice_restart: bool = False


@dataclass(frozen=True)
class RemoteAnswer:
    sdp: str


@dataclass(frozen=True)
class RemoteCandidate:
    candidate: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IceStateChanged:
    state: str


@dataclass(frozen=True)
class AnswerTimeout:
    offer_id: int


@dataclass(frozen=True)
class IceTimeout:
    pass


@dataclass(frozen=True)
class Close:
    pass


def event_for_signal(signal: Signal):
    """Map an inbound signaling envelope to its controller event."""
    if isinstance(signal, Offer):
        return RemoteOffer(sdp=signal.sdp, ice_restart=signal.ice_restart)
    if isinstance(signal, Answer):
        return RemoteAnswer(sdp=signal.sdp)
    if isinstance(signal, Candidate):
        return RemoteCandidate(candidate=dict(signal.candidate))
    raise TypeError(f"Not a peer signal: {type(signal).__name__}")


class PeerController:
    """Negotiates and supervises the connection to one remote participant.

    Attributes:
        participant_id: Remote participant.
        local_id: Local participant.
        connection: Connection object (AiortcConnection or compatible).
        registry: Arena the controller removes itself from when it ends.
        is_initiator: Whether this side sent the first offer.
        state: Current NegotiationState.
        remote_tracks: track id -> remote track being received.
        negotiations: Completed offer/answer cycles.
        ice_restarts: ICE restarts attempted since the last connected state.
        error: The error that failed the peer, if any.
    """

    def __init__(
        self,
        participant_id: str,
        local_id: str,
        connection: "AiortcConnection",
        registry: "PeerRegistry",
        send: Callable[[Signal], Awaitable[None]],
        *,
        is_initiator: bool,
        negotiation_timeout: float = 10.0,
        ice_restart_timeout: float = 15.0,
        max_ice_restarts: int = 1,
        on_failed: Optional[Callable[["PeerController", Exception], None]] = None,
    ):
        if participant_id == local_id:
            raise ValueError("A participant cannot connect to itself")

        self.participant_id = participant_id
        self.local_id = local_id
        self.connection = connection
        self.registry = registry
        self.is_initiator = is_initiator
        self.negotiation_timeout = negotiation_timeout
        self.ice_restart_timeout = ice_restart_timeout
        self.max_ice_restarts = max_ice_restarts
        self.on_failed = on_failed
        self._send_signal = send

        self.state = NegotiationState.NEW
        self.remote_tracks: Dict[str, "MediaStreamTrack"] = {}
        self.negotiations = 0
        self.ice_restarts = 0
        self.error: Optional[Exception] = None

        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._pending_candidates: List[Dict[str, Any]] = []
        self._seen_candidates: Set[tuple] = set()
        self._last_remote_offer: Optional[str] = None
        self._last_remote_answer: Optional[str] = None
        self._needs_negotiation = False
        self._renegotiation_queued = False
        self._offer_is_renegotiation = False
        self._offer_id = 0
        self._answer_timer: Optional[asyncio.TimerHandle] = None
        self._ice_timer: Optional[asyncio.TimerHandle] = None
        self._closing: Optional[asyncio.Future] = None

        self._handlers = {
            StartNegotiation: self._on_start,
            NegotiationNeeded: self._on_negotiation_needed,
            RemoteOffer: self._on_remote_offer,
            RemoteAnswer: self._on_remote_answer,
            RemoteCandidate: self._on_remote_candidate,
            IceStateChanged: self._on_ice_state,
            AnswerTimeout: self._on_answer_timeout,
            IceTimeout: self._on_ice_timeout,
        }

        connection.on("track", self._on_remote_track)
        connection.on("trackended", self._on_remote_track_ended)
        connection.on("icestatechange", self._on_connection_ice_state)
        connection.on("icecandidate", self._on_local_candidate)

    def __repr__(self) -> str:
        role = "initiator" if self.is_initiator else "responder"
        return f"<PeerController {self.participant_id} {role} {self.state.value}>"

    # ----- properties -----

    @property
    def is_polite(self) -> bool:
        """Whether this side yields its own offer on glare."""
        return self.local_id < self.participant_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_stale(self) -> bool:
        """Terminal, or its ICE transport is failed/closed."""
        return self.is_terminal or self.connection.ice_state in STALE_ICE_STATES

    @property
    def pending_tasks(self) -> List[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    # ----- entry points -----

    def submit(self, event) -> Optional[asyncio.Task]:
        """Queue ``event`` for dispatch. ``Close`` is applied immediately."""
        if isinstance(event, Close):
            self.close()
            return None
        if self.is_terminal:
            logger.debug(f"Dropping {type(event).__name__} for {self.participant_id}: {self.state.value}")
            return None
        return self._spawn(self.dispatch(event))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def dispatch(self, event) -> None:
        """Run the handler for ``event`` with this peer's other handlers excluded."""
        if isinstance(event, Close):
            self.close()
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown peer event: {type(event).__name__}")

        async with self._lock:
            if self.is_terminal:
                return
            try:
                await handler(event)
            except (NegotiationError, IceFailure) as e:
                self._fail(e)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._fail(
                    NegotiationError(
                        f"{type(e).__name__} while handling {type(event).__name__}: {e}",
                        self.participant_id,
                    )
                )

    def request_renegotiation(self) -> None:
        """Ask for a new offer after the local track set changed.

        Called synchronously by the local media controller after each track
        mutation. Requests made before the queued one runs are coalesced.
        """
        if self.is_terminal or self._renegotiation_queued:
            return
        self._renegotiation_queued = True
        self.submit(NegotiationNeeded())

    # ----- helpers -----

    def _set_state(self, state: NegotiationState) -> None:
        if state != self.state:
            logger.debug(f"Peer {self.participant_id}: {self.state.value} -> {state.value}")
            self.state = state

    async def _step(self, awaitable: Awaitable, what: str):
        """Await a connection operation, bounded by the negotiation timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.negotiation_timeout)
        except asyncio.TimeoutError as e:
            raise NegotiationError(
                f"Timed out during {what} with {self.participant_id}", self.participant_id
            ) from e

    async def _send(self, signal: Signal) -> None:
        await self._send_signal(signal)

    def _arm_answer_timer(self) -> None:
        self._cancel_answer_timer()
        loop = asyncio.get_running_loop()
        self._answer_timer = loop.call_later(
            self.negotiation_timeout, self.submit, AnswerTimeout(self._offer_id)
        )

    def _cancel_answer_timer(self) -> None:
        if self._answer_timer is not None:
            self._answer_timer.cancel()
            self._answer_timer = None

    def _arm_ice_timer(self) -> None:
        if self._ice_timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._ice_timer = loop.call_later(self.ice_restart_timeout, self.submit, IceTimeout())

    def _cancel_ice_timer(self) -> None:
        if self._ice_timer is not None:
            self._ice_timer.cancel()
            self._ice_timer = None

    def _after_stable(self) -> None:
        if self._needs_negotiation:
            self._needs_negotiation = False
            self.request_renegotiation()

    # ----- handlers -----

    async def _on_start(self, event: StartNegotiation) -> None:
        # A remote offer may have been answered before the start ran
        if self.state != NegotiationState.NEW:
            logger.debug(f"Ignoring start for {self.participant_id}: already {self.state.value}")
            return
        await self._create_offer(renegotiation=False)

    async def _on_negotiation_needed(self, event: NegotiationNeeded) -> None:
        self._renegotiation_queued = False
        # A responder that has not been offered to yet renegotiates after its answer
        if self.state not in OFFER_STATES or (
            self.state == NegotiationState.NEW and not self.is_initiator
        ):
            logger.debug(
                f"Deferring renegotiation with {self.participant_id} ({self.state.value})"
            )
            self._needs_negotiation = True
            return
        await self._create_offer(renegotiation=True)

    async def _create_offer(self, renegotiation: bool, ice_restart: bool = False) -> None:
        sdp = await self._step(
            self.connection.create_offer(ice_restart=ice_restart), "offer creation"
        )
        if self.is_terminal:
            return

        self._offer_id += 1
        self._offer_is_renegotiation = renegotiation
        self._set_state(NegotiationState.HAVE_LOCAL_OFFER)
        self._arm_answer_timer()
        await self._send(
            Offer(
                sender=self.local_id,
                target=self.participant_id,
                sdp=sdp,
                ice_restart=ice_restart,
            )
        )
        logger.info(
            f"Sent {'ICE restart ' if ice_restart else ''}offer to {self.participant_id}"
        )

    async def _on_remote_offer(self, event: RemoteOffer) -> None:
        if event.sdp == self._last_remote_offer:
            logger.debug(f"Ignoring redelivered offer from {self.participant_id}")
            return

        if self.state == NegotiationState.HAVE_LOCAL_OFFER:
            if not self.is_polite:
                logger.info(
                    f"Glare with {self.participant_id}: keeping local offer, ignoring theirs"
                )
                return
            logger.info(f"Glare with {self.participant_id}: rolling back local offer")
            self._cancel_answer_timer()
            await self._step(self.connection.rollback(), "rollback")
            if self.is_terminal:
                return
            self._set_state(
                NegotiationState.STABLE if self.negotiations else NegotiationState.NEW
            )
            if self._offer_is_renegotiation:
                self._needs_negotiation = True

        self._last_remote_offer = event.sdp
        self._set_state(NegotiationState.HAVE_REMOTE_OFFER)
        await self._step(
            self.connection.apply_offer(event.sdp, ice_restart=event.ice_restart),
            "applying remote offer",
        )
        if self.is_terminal:
            return

        await self._flush_candidates()
        if self.is_terminal:
            return

        sdp = await self._step(self.connection.create_answer(), "answer creation")
        if self.is_terminal:
            return

        self._set_state(NegotiationState.STABLE)
        self.negotiations += 1
        await self._send(Answer(sender=self.local_id, target=self.participant_id, sdp=sdp))
        logger.info(f"Sent answer to {self.participant_id}")
        self._after_stable()

    async def _on_remote_answer(self, event: RemoteAnswer) -> None:
        if self.state != NegotiationState.HAVE_LOCAL_OFFER:
            logger.debug(
                f"Ignoring answer from {self.participant_id} in state {self.state.value}"
            )
            return
        if event.sdp == self._last_remote_answer:
            logger.debug(f"Ignoring redelivered answer from {self.participant_id}")
            return

        self._last_remote_answer = event.sdp
        await self._step(self.connection.apply_answer(event.sdp), "applying remote answer")
        if self.is_terminal:
            return

        self._cancel_answer_timer()
        self._set_state(NegotiationState.STABLE)
        self.negotiations += 1
        logger.info(f"Negotiation with {self.participant_id} complete")
        await self._flush_candidates()
        if self.is_terminal:
            return
        self._after_stable()

    async def _on_remote_candidate(self, event: RemoteCandidate) -> None:
        candidate = event.candidate
        key = candidate_key(candidate)
        if key in self._seen_candidates:
            logger.debug(f"Ignoring redelivered candidate from {self.participant_id}")
            return
        self._seen_candidates.add(key)

        if not self.connection.has_remote_description:
            self._pending_candidates.append(candidate)
            logger.debug(
                f"Queued candidate from {self.participant_id} "
                f"({len(self._pending_candidates)} pending)"
            )
            return
        await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: Dict[str, Any]) -> None:
        try:
            await self._step(self.connection.add_candidate(candidate), "adding candidate")
        except NegotiationError:
            raise
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate from {self.participant_id}: {e}")

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(f"Flushing {len(pending)} candidates from {self.participant_id}")
        for candidate in pending:
            await self._add_candidate(candidate)
            if self.is_terminal:
                return

    async def _on_ice_state(self, event: IceStateChanged) -> None:
        ice_state = event.state
        logger.info(f"ICE state with {self.participant_id}: {ice_state}")

        if ice_state in CONNECTED_ICE_STATES:
            self.ice_restarts = 0
            self._cancel_ice_timer()
            return

        if ice_state == "closed":
            raise IceFailure(f"ICE transport to {self.participant_id} closed", self.participant_id)

        if ice_state not in BROKEN_ICE_STATES:
            return

        if not self.is_initiator:
            # The initiator restarts; wait for it
            self._arm_ice_timer()
            return

        if self._ice_timer is not None:
            logger.debug(f"ICE restart with {self.participant_id} already in progress")
            return

        if self.ice_restarts >= self.max_ice_restarts:
            raise IceFailure(
                f"ICE {ice_state} with {self.participant_id} after "
                f"{self.ice_restarts} restart attempts",
                self.participant_id,
            )

        if self.state not in OFFER_STATES:
            # The outstanding offer's answer timeout bounds this wait
            logger.debug(
                f"ICE {ice_state} with {self.participant_id} during {self.state.value}"
            )
            return

        self.ice_restarts += 1
        logger.warning(
            f"Restarting ICE with {self.participant_id} "
            f"(attempt {self.ice_restarts}/{self.max_ice_restarts})"
        )
        self._arm_ice_timer()
        await self._create_offer(renegotiation=False, ice_restart=True)

    async def _on_answer_timeout(self, event: AnswerTimeout) -> None:
        if self.state != NegotiationState.HAVE_LOCAL_OFFER or event.offer_id != self._offer_id:
            return
        raise NegotiationError(
            f"No answer from {self.participant_id} within {self.negotiation_timeout}s",
            self.participant_id,
        )

    async def _on_ice_timeout(self, event: IceTimeout) -> None:
        self._ice_timer = None
        if self.connection.ice_state in CONNECTED_ICE_STATES:
            return
        raise IceFailure(
            f"ICE with {self.participant_id} did not recover within "
            f"{self.ice_restart_timeout}s",
            self.participant_id,
        )

    # ----- connection events -----

    def _on_connection_ice_state(self, ice_state: str) -> None:
        self.submit(IceStateChanged(ice_state))

    def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.is_terminal:
            return
        self._spawn(
            self._send(
                Candidate(
                    sender=self.local_id,
                    target=self.participant_id,
                    candidate=dict(candidate),
                )
            )
        )

    def _on_remote_track(self, track: "MediaStreamTrack") -> None:
        if self.is_terminal:
            return
        logger.info(f"Receiving {track.kind} from {self.participant_id}")
        self.remote_tracks[track.id] = track
        self.registry.refresh(self.participant_id)

    def _on_remote_track_ended(self, track: "MediaStreamTrack") -> None:
        if self.remote_tracks.pop(track.id, None) is None:
            return
        logger.info(f"{track.kind} from {self.participant_id} ended")
        self.registry.refresh(self.participant_id)

    # ----- teardown -----

    def close(self) -> None:
        """Close the peer now, abandoning any negotiation in flight."""
        if self.state == NegotiationState.CLOSED:
            return
        was_failed = self.state == NegotiationState.FAILED
        self._teardown(NegotiationState.CLOSED)
        if not was_failed:
            logger.info(f"Closed peer {self.participant_id}")

    def _fail(self, error: Exception) -> None:
        if self.is_terminal:
            return
        logger.warning(f"Peer {self.participant_id} failed: {error}")
        self.error = error
        self._teardown(NegotiationState.FAILED)
        if self.on_failed is not None:
            self.on_failed(self, error)

    def _teardown(self, final_state: NegotiationState) -> None:
        self.state = final_state
        self._cancel_answer_timer()
        self._cancel_ice_timer()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        self._pending_candidates.clear()
        self.remote_tracks.clear()

        if self._closing is None:
            self._closing = asyncio.ensure_future(self.connection.close())
            self._closing.add_done_callback(self._log_close_error)

        self.registry.remove(self.participant_id, self)

    def _log_close_error(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning(
                f"Error closing connection to {self.participant_id}: {future.exception()}"
            )

    async def wait_closed(self) -> None:
        """Wait for the connection close scheduled by ``close``."""
        if self._closing is not None:
            await asyncio.shield(self._closing)
