"""Tests for signaling envelopes and their wire encoding."""

import pytest

from meshcall.errors import ProtocolError
from meshcall.protocol import (
    Answer,
    Candidate,
    Join,
    Leave,
    Offer,
    addressed_to,
    channel_for_room,
    decode,
    encode,
)


class TestChannel:
    def test_channel_for_room(self):
        assert channel_for_room("r1") == "call:r1"

    def test_empty_room_rejected(self):
        with pytest.raises(ValueError):
            channel_for_room("")


class TestEncode:
    """Envelopes to (event, payload)."""

    def test_join(self):
        assert encode(Join("alice")) == ("join", {"userId": "alice"})

    def test_leave(self):
        assert encode(Leave("alice")) == ("leave", {"userId": "alice"})

    def test_offer(self):
        event, payload = encode(Offer(sender="alice", target="bob", sdp="v=0"))

        assert event == "signal"
        assert payload == {
            "to": "bob",
            "from": "alice",
            "type": "offer",
            "data": {"type": "offer", "sdp": "v=0"},
        }

    def test_ice_restart_offer_is_flagged(self):
        _, payload = encode(Offer(sender="alice", target="bob", sdp="v=0", ice_restart=True))

        assert payload["data"]["iceRestart"] is True

    def test_candidate_data_is_the_candidate(self):
        candidate = {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0}
        _, payload = encode(Candidate(sender="alice", target="bob", candidate=candidate))

        assert payload["type"] == "candidate"
        assert payload["data"] == candidate

    def test_unknown_envelope(self):
        with pytest.raises(TypeError):
            encode("join")


class TestDecode:
    """(event, payload) to envelopes."""

    def test_offer_from_browser_client(self):
        payload = {
            "to": "bob",
            "from": "alice",
            "type": "offer",
            "data": {"type": "offer", "sdp": "v=0"},
        }

        assert decode("signal", payload) == Offer(sender="alice", target="bob", sdp="v=0")

    def test_answer(self):
        payload = {"to": "alice", "from": "bob", "type": "answer",
                   "data": {"type": "answer", "sdp": "v=0"}}

        assert decode("signal", payload) == Answer(sender="bob", target="alice", sdp="v=0")

    def test_end_of_candidates(self):
        payload = {"to": "bob", "from": "alice", "type": "candidate", "data": {}}

        envelope = decode("signal", payload)

        assert envelope.candidate == {"candidate": "", "sdpMid": None, "sdpMLineIndex": None}

    def test_candidate_key_ignores_extra_fields(self):
        payload = {"to": "bob", "from": "alice", "type": "candidate",
                   "data": {"candidate": "candidate:1", "sdpMid": "0",
                            "sdpMLineIndex": 0, "usernameFragment": "x"}}

        assert decode("signal", payload).key == ("candidate:1", "0", 0)

    @pytest.mark.parametrize(
        "event, payload",
        [
            ("join", {}),
            ("join", {"userId": ""}),
            ("leave", ["alice"]),
            ("presence", {"userId": "alice"}),
            ("signal", {"from": "alice", "type": "offer", "data": {"sdp": "v=0"}}),
            ("signal", {"to": "bob", "from": "alice", "type": "offer"}),
            ("signal", {"to": "bob", "from": "alice", "type": "offer", "data": {}}),
            ("signal", {"to": "bob", "from": "alice", "type": "bye", "data": {}}),
        ],
    )
    def test_malformed(self, event, payload):
        with pytest.raises(ProtocolError):
            decode(event, payload)

    def test_protocol_error_is_value_error(self):
        with pytest.raises(ValueError):
            decode("join", None)


class TestAddressedTo:
    def test_broadcast_envelopes(self):
        assert addressed_to(Join("alice"), "bob") is None

    def test_signals(self):
        offer = Offer(sender="alice", target="bob", sdp="v=0")

        assert addressed_to(offer, "bob") is True
        assert addressed_to(offer, "carol") is False
