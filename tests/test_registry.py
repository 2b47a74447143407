"""Tests for the peer registry."""

from unittest.mock import MagicMock

import pytest

from conftest import FakeRemoteTrack
from meshcall.call.registry import PeerRegistry


def make_controller(participant_id, *tracks):
    controller = MagicMock()
    controller.participant_id = participant_id
    controller.remote_tracks = {track.id: track for track in tracks}
    return controller


class TestPeerRegistry:
    """Insert, refresh and remove."""

    def test_insert_and_lookup(self):
        registry = PeerRegistry()
        controller = make_controller("bob")

        entry = registry.insert(controller)

        assert "bob" in registry
        assert len(registry) == 1
        assert registry.get("bob") is entry
        assert entry.participant_id == "bob"
        assert registry.controllers() == [controller]

    def test_duplicate_insert_is_rejected(self):
        registry = PeerRegistry()
        registry.insert(make_controller("bob"))

        with pytest.raises(ValueError):
            registry.insert(make_controller("bob"))

    def test_live_video_is_derived_from_tracks(self):
        registry = PeerRegistry()
        video = FakeRemoteTrack("video")
        controller = make_controller("bob", FakeRemoteTrack("audio"))
        entry = registry.insert(controller)
        assert entry.has_live_video is False

        controller.remote_tracks[video.id] = video
        registry.refresh("bob")
        assert entry.has_live_video is True

        video.stop()
        registry.refresh("bob")
        assert entry.has_live_video is False

    def test_stream_lists_live_tracks(self):
        registry = PeerRegistry()
        audio = FakeRemoteTrack("audio")
        ended = FakeRemoteTrack("video")
        ended.stop()
        entry = registry.insert(make_controller("bob", audio, ended))

        assert entry.stream == (audio,)

    def test_stream_is_none_without_tracks(self):
        registry = PeerRegistry()
        entry = registry.insert(make_controller("bob"))

        assert entry.stream is None

    def test_remove_only_matching_controller(self):
        registry = PeerRegistry()
        old = make_controller("bob")
        registry.insert(old)
        registry.remove("bob")
        new = make_controller("bob")
        registry.insert(new)

        assert registry.remove("bob", old) is False
        assert registry.get("bob").controller is new
        assert registry.remove("bob", new) is True
        assert "bob" not in registry

    def test_remove_unknown_participant(self):
        assert PeerRegistry().remove("nobody") is False

    def test_listener_called_on_changes(self):
        listener = MagicMock()
        registry = PeerRegistry(listener=listener)

        registry.insert(make_controller("bob"))
        registry.refresh("bob")
        registry.refresh("carol")
        registry.remove("bob")

        assert listener.call_count == 3

    def test_iteration_tolerates_removal(self):
        registry = PeerRegistry()
        registry.insert(make_controller("bob"))
        registry.insert(make_controller("carol"))

        for entry in registry:
            registry.remove(entry.participant_id)

        assert len(registry) == 0
