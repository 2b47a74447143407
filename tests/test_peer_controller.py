"""Tests for the peer connection controller state machine."""

import asyncio
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from conftest import FakeConnection, drain
from meshcall.call.peer_controller import (
    AnswerTimeout,
    IceStateChanged,
    IceTimeout,
    NegotiationNeeded,
    NegotiationState,
    PeerController,
    RemoteAnswer,
    RemoteCandidate,
    StartNegotiation,
    event_for_signal,
)
from meshcall.call.registry import PeerRegistry
from meshcall.errors import IceFailure, NegotiationError
from meshcall.protocol import Answer, Candidate, Offer


class Side:
    """One end of a two-party negotiation with its outbox."""

    def __init__(self, local_id, remote_id, is_initiator, **kwargs):
        self.connection = FakeConnection()
        self.registry = PeerRegistry()
        self.sent = []
        self.on_failed = MagicMock()
        self.controller = PeerController(
            remote_id,
            local_id,
            self.connection,
            self.registry,
            self._send,
            is_initiator=is_initiator,
            on_failed=self.on_failed,
            **kwargs,
        )
        self.registry.insert(self.controller)

    async def _send(self, signal):
        self.sent.append(signal)

    @property
    def last(self):
        return self.sent[-1]

    def of_type(self, kind):
        return [s for s in self.sent if isinstance(s, kind)]


async def deliver(signal, side):
    await side.controller.dispatch(event_for_signal(signal))


async def negotiate(a, b):
    """a offers, b answers."""
    await a.controller.dispatch(StartNegotiation())
    await deliver(a.last, b)
    await deliver(b.last, a)


@pytest_asyncio.fixture
async def pair():
    a = Side("alice", "bob", is_initiator=True)
    b = Side("bob", "alice", is_initiator=False)
    yield a, b
    a.controller.close()
    b.controller.close()


class TestBasicNegotiation:
    """Offer/answer between an initiator and a responder."""

    @pytest.mark.asyncio
    async def test_start_sends_addressed_offer(self, pair):
        a, _ = pair
        await a.controller.dispatch(StartNegotiation())

        assert a.controller.state == NegotiationState.HAVE_LOCAL_OFFER
        assert isinstance(a.last, Offer)
        assert a.last.sender == "alice"
        assert a.last.target == "bob"
        assert a.last.ice_restart is False

    @pytest.mark.asyncio
    async def test_offer_answer_reaches_stable(self, pair):
        a, b = pair
        await negotiate(a, b)

        assert a.controller.state == NegotiationState.STABLE
        assert b.controller.state == NegotiationState.STABLE
        assert isinstance(b.last, Answer)
        assert a.controller.negotiations == 1
        assert b.controller.negotiations == 1

    @pytest.mark.asyncio
    async def test_start_outside_new_or_stable_is_ignored(self, pair):
        a, _ = pair
        await a.controller.dispatch(StartNegotiation())
        await a.controller.dispatch(StartNegotiation())

        assert len(a.of_type(Offer)) == 1

    @pytest.mark.asyncio
    async def test_answer_in_stable_is_ignored(self, pair):
        a, b = pair
        await negotiate(a, b)
        await deliver(b.last, a)

        assert a.controller.state == NegotiationState.STABLE
        assert a.controller.negotiations == 1

    @pytest.mark.asyncio
    async def test_redelivered_offer_is_ignored(self, pair):
        a, b = pair
        await a.controller.dispatch(StartNegotiation())
        offer = a.last
        await deliver(offer, b)
        await deliver(offer, b)

        assert len(b.of_type(Answer)) == 1
        assert b.controller.state == NegotiationState.STABLE

    @pytest.mark.asyncio
    async def test_self_connection_is_rejected(self):
        with pytest.raises(ValueError):
            PeerController(
                "alice",
                "alice",
                FakeConnection(),
                PeerRegistry(),
                MagicMock(),
                is_initiator=True,
            )


class TestGlare:
    """Both sides offering at once."""

    @pytest.mark.asyncio
    async def test_responder_defers_its_offer(self, pair):
        a, b = pair
        assert a.controller.is_polite
        assert not b.controller.is_polite

        await a.controller.dispatch(StartNegotiation())
        await b.controller.dispatch(NegotiationNeeded())
        # b is a responder in "new": its offer waits for a's
        assert b.controller.state == NegotiationState.NEW

    @pytest.mark.asyncio
    async def test_crossed_offers_resolve_to_one_negotiation(self):
        a = Side("alice", "bob", is_initiator=True)
        b = Side("bob", "alice", is_initiator=True)

        await a.controller.dispatch(StartNegotiation())
        await b.controller.dispatch(StartNegotiation())
        offer_a, offer_b = a.last, b.last

        await deliver(offer_b, a)
        await deliver(offer_a, b)

        assert a.connection.rollbacks == 1
        assert b.connection.rollbacks == 0
        assert a.controller.state == NegotiationState.STABLE
        assert b.controller.state == NegotiationState.HAVE_LOCAL_OFFER
        assert isinstance(a.last, Answer)

        await deliver(a.last, b)

        assert b.controller.state == NegotiationState.STABLE
        assert len(a.of_type(Answer)) == 1
        assert len(b.of_type(Answer)) == 0

        a.controller.close()
        b.controller.close()

    @pytest.mark.asyncio
    async def test_rolled_back_renegotiation_is_retried(self, pair):
        a, b = pair
        await negotiate(a, b)

        await a.controller.dispatch(NegotiationNeeded())
        await b.controller.dispatch(NegotiationNeeded())
        offer_a, offer_b = a.last, b.last
        assert isinstance(offer_a, Offer) and isinstance(offer_b, Offer)

        await deliver(offer_b, a)
        await drain(a.controller)

        assert a.connection.rollbacks == 1
        kinds = [type(s).__name__ for s in a.sent]
        assert kinds[-2:] == ["Answer", "Offer"]
        assert a.controller.state == NegotiationState.HAVE_LOCAL_OFFER

    @pytest.mark.asyncio
    async def test_late_copy_of_answered_offer_is_not_glare(self):
        alice = Side("alice", "bob", is_initiator=False)
        bob = Side("bob", "alice", is_initiator=True)
        await negotiate(bob, alice)
        first_offer = bob.of_type(Offer)[0]

        await alice.controller.dispatch(NegotiationNeeded())
        assert alice.controller.state == NegotiationState.HAVE_LOCAL_OFFER

        await deliver(first_offer, alice)

        assert alice.connection.rollbacks == 0
        assert len(alice.of_type(Answer)) == 1
        assert alice.controller.state == NegotiationState.HAVE_LOCAL_OFFER

        alice.controller.close()
        bob.controller.close()


class TestRenegotiation:
    """Renegotiation requests from local track changes."""

    @pytest.mark.asyncio
    async def test_requests_are_coalesced(self, pair):
        a, b = pair
        await negotiate(a, b)

        a.controller.request_renegotiation()
        a.controller.request_renegotiation()
        await drain(a.controller)

        assert len(a.of_type(Offer)) == 2

    @pytest.mark.asyncio
    async def test_request_during_offer_is_replayed_when_stable(self, pair):
        a, b = pair
        await a.controller.dispatch(StartNegotiation())
        await a.controller.dispatch(NegotiationNeeded())
        assert len(a.of_type(Offer)) == 1

        await deliver(a.last, b)
        await deliver(b.last, a)
        await drain(a.controller)

        assert len(a.of_type(Offer)) == 2

    @pytest.mark.asyncio
    async def test_responder_offers_after_first_answer(self, pair):
        a, b = pair
        await b.controller.dispatch(NegotiationNeeded())
        assert b.sent == []

        await negotiate(a, b)
        await drain(b.controller)

        assert isinstance(b.last, Offer)


class TestCandidates:
    """Trickled ICE candidates."""

    @pytest.mark.asyncio
    async def test_queued_until_remote_description(self, pair):
        a, b = pair
        candidate = Candidate(
            sender="alice",
            target="bob",
            candidate={"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host",
                       "sdpMid": "0", "sdpMLineIndex": 0},
        )
        await deliver(candidate, b)
        assert b.connection.candidates == []

        await a.controller.dispatch(StartNegotiation())
        await deliver(a.last, b)

        assert b.connection.candidates == [candidate.candidate]

    @pytest.mark.asyncio
    async def test_duplicates_are_dropped(self, pair):
        a, b = pair
        await negotiate(a, b)
        event = RemoteCandidate({"candidate": "candidate:2", "sdpMid": "0", "sdpMLineIndex": 0})

        await b.controller.dispatch(event)
        await b.controller.dispatch(event)

        assert len(b.connection.candidates) == 1

    @pytest.mark.asyncio
    async def test_rejected_candidate_is_not_fatal(self, pair):
        a, b = pair
        await negotiate(a, b)

        await b.controller.dispatch(RemoteCandidate({"candidate": "bad"}))

        assert b.controller.state == NegotiationState.STABLE

    @pytest.mark.asyncio
    async def test_local_candidates_are_sent(self, pair):
        a, _ = pair
        a.connection.emit("icecandidate", {"candidate": "candidate:3", "sdpMid": "0"})
        await drain(a.controller)

        assert isinstance(a.last, Candidate)
        assert a.last.target == "bob"


class TestIceRecovery:
    """ICE restart policy."""

    @pytest.mark.asyncio
    async def test_initiator_restarts_ice(self, pair):
        a, b = pair
        await negotiate(a, b)

        await a.controller.dispatch(IceStateChanged("failed"))

        assert a.controller.ice_restarts == 1
        assert isinstance(a.last, Offer)
        assert a.last.ice_restart is True
        assert a.connection.offers[-1]["ice_restart"] is True

    @pytest.mark.asyncio
    async def test_failure_during_restart_is_ignored(self, pair):
        a, b = pair
        await negotiate(a, b)
        await a.controller.dispatch(IceStateChanged("failed"))
        await a.controller.dispatch(IceStateChanged("disconnected"))

        assert len(a.of_type(Offer)) == 2
        assert a.controller.state == NegotiationState.HAVE_LOCAL_OFFER

    @pytest.mark.asyncio
    async def test_connected_resets_restart_count(self, pair):
        a, b = pair
        await negotiate(a, b)
        await a.controller.dispatch(IceStateChanged("failed"))
        await deliver(a.last, b)
        await deliver(b.last, a)

        a.connection.ice_state = "connected"
        await a.controller.dispatch(IceStateChanged("connected"))

        assert a.controller.ice_restarts == 0
        assert a.controller.state == NegotiationState.STABLE

    @pytest.mark.asyncio
    async def test_responder_does_not_restart(self, pair):
        a, b = pair
        await negotiate(a, b)

        await b.controller.dispatch(IceStateChanged("failed"))

        assert not b.of_type(Offer)
        assert b.controller.state == NegotiationState.STABLE

    @pytest.mark.asyncio
    async def test_restarts_exhausted_fail_the_peer(self):
        a = Side("alice", "bob", is_initiator=True, max_ice_restarts=0)
        b = Side("bob", "alice", is_initiator=False)
        await negotiate(a, b)

        await a.controller.dispatch(IceStateChanged("failed"))

        assert a.controller.state == NegotiationState.FAILED
        assert isinstance(a.controller.error, IceFailure)
        assert "bob" not in a.registry
        a.on_failed.assert_called_once()
        b.controller.close()

    @pytest.mark.asyncio
    async def test_ice_timeout_fails_unrecovered_peer(self, pair):
        a, b = pair
        await negotiate(a, b)
        b.connection.ice_state = "disconnected"

        await b.controller.dispatch(IceTimeout())

        assert b.controller.state == NegotiationState.FAILED
        assert isinstance(b.controller.error, IceFailure)

    @pytest.mark.asyncio
    async def test_responder_waits_then_fails(self):
        a = Side("alice", "bob", is_initiator=True)
        b = Side("bob", "alice", is_initiator=False, ice_restart_timeout=0.05)
        await negotiate(a, b)

        b.connection.set_ice_state("failed")
        await asyncio.sleep(0.2)

        assert b.controller.state == NegotiationState.FAILED
        assert "alice" not in b.registry
        a.controller.close()


class TestTimeouts:
    """Bounded waits."""

    @pytest.mark.asyncio
    async def test_unanswered_offer_fails_the_peer(self):
        a = Side("alice", "bob", is_initiator=True, negotiation_timeout=0.05)
        await a.controller.dispatch(StartNegotiation())

        await asyncio.sleep(0.2)

        assert a.controller.state == NegotiationState.FAILED
        assert isinstance(a.controller.error, NegotiationError)
        assert "bob" not in a.registry
        assert a.connection.closed

    @pytest.mark.asyncio
    async def test_stale_answer_timeout_is_ignored(self, pair):
        a, b = pair
        await negotiate(a, b)

        await a.controller.dispatch(AnswerTimeout(offer_id=1))

        assert a.controller.state == NegotiationState.STABLE

    @pytest.mark.asyncio
    async def test_connection_error_fails_the_peer(self, pair):
        a, b = pair
        await a.controller.dispatch(StartNegotiation())
        await deliver(a.last, b)

        # Applying the answer now raises
        a.connection.signaling_state = "closed"
        await a.controller.dispatch(RemoteAnswer(b.last.sdp))

        assert a.controller.state == NegotiationState.FAILED
        assert isinstance(a.controller.error, NegotiationError)


class TestClose:
    """Teardown."""

    @pytest.mark.asyncio
    async def test_close_removes_from_registry(self, pair):
        a, b = pair
        await negotiate(a, b)

        a.controller.close()
        await a.controller.wait_closed()

        assert a.controller.state == NegotiationState.CLOSED
        assert "bob" not in a.registry
        assert a.connection.closed
        a.on_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_events_after_close_are_dropped(self, pair):
        a, b = pair
        a.controller.close()

        assert a.controller.submit(StartNegotiation()) is None
        await a.controller.dispatch(StartNegotiation())
        assert a.sent == []

    @pytest.mark.asyncio
    async def test_close_cancels_queued_work(self, pair):
        a, b = pair
        task = a.controller.submit(StartNegotiation())
        a.controller.close()
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        assert a.sent == []

    @pytest.mark.asyncio
    async def test_remote_tracks_follow_negotiation(self, pair):
        a, b = pair
        a.connection.set_track("audio", MagicMock())
        await negotiate(a, b)

        assert len(b.controller.remote_tracks) == 1
        track = next(iter(b.controller.remote_tracks.values()))
        assert track.kind == "audio"
