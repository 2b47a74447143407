"""Shared fixtures for meshcall tests.

``FakeConnection`` stands in for ``AiortcConnection``: descriptions are JSON
documents listing the slots each side sends, every operation completes
immediately, and remote tracks appear and end as the negotiated slots change.
"""

import asyncio
import itertools
import json
import uuid
from typing import Any, Dict, List, Optional

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from meshcall.config import Config
from meshcall.errors import NegotiationError

_sdp_counter = itertools.count(1)


class FakeRemoteTrack:
    """Remote track as seen by the registry."""

    def __init__(self, kind: str):
        self.id = str(uuid.uuid4())
        self.kind = kind
        self.readyState = "live"

    def stop(self):
        self.readyState = "ended"


class FakeConnection(AsyncIOEventEmitter):
    """In-memory connection with immediate offer/answer."""

    def __init__(self):
        super().__init__()
        self.signaling_state = "stable"
        self.ice_state = "new"
        self.remote_sdp: Optional[str] = None
        self.offers: List[Dict[str, Any]] = []
        self.answers: List[Dict[str, Any]] = []
        self.rollbacks = 0
        self.candidates: List[Dict[str, Any]] = []
        self.closed = False
        self.sending: Dict[str, bool] = {}
        self.tracks: Dict[str, Any] = {}
        self._remote_by_slot: Dict[str, FakeRemoteTrack] = {}

    @property
    def has_remote_description(self) -> bool:
        return self.remote_sdp is not None

    def _description(self, kind: str, **extra) -> Dict[str, Any]:
        return {
            "type": kind,
            "n": next(_sdp_counter),
            "send": sorted(slot for slot, on in self.sending.items() if on),
            **extra,
        }

    def _sync_remote(self, sdp: str) -> None:
        remote_slots = set(json.loads(sdp)["send"])
        for slot in sorted(remote_slots):
            if slot not in self._remote_by_slot:
                track = FakeRemoteTrack(slot)
                self._remote_by_slot[slot] = track
                self.emit("track", track)
        for slot in list(self._remote_by_slot):
            if slot not in remote_slots:
                track = self._remote_by_slot.pop(slot)
                track.stop()
                self.emit("trackended", track)

    async def create_offer(self, ice_restart: bool = False) -> str:
        if self.signaling_state != "stable":
            raise NegotiationError(f"create_offer in {self.signaling_state}")
        description = self._description("offer", ice_restart=ice_restart)
        self.offers.append(description)
        self.signaling_state = "have-local-offer"
        return json.dumps(description)

    async def apply_offer(self, sdp: str, ice_restart: bool = False) -> None:
        if self.signaling_state != "stable":
            raise NegotiationError(f"apply_offer in {self.signaling_state}")
        if json.loads(sdp)["type"] != "offer":
            raise NegotiationError("not an offer")
        self.remote_sdp = sdp
        self.signaling_state = "have-remote-offer"

    async def create_answer(self) -> str:
        if self.signaling_state != "have-remote-offer":
            raise NegotiationError(f"create_answer in {self.signaling_state}")
        description = self._description("answer")
        self.answers.append(description)
        self.signaling_state = "stable"
        self._sync_remote(self.remote_sdp)
        return json.dumps(description)

    async def apply_answer(self, sdp: str) -> None:
        if self.signaling_state != "have-local-offer":
            raise NegotiationError(f"apply_answer in {self.signaling_state}")
        self.remote_sdp = sdp
        self.signaling_state = "stable"
        self._sync_remote(sdp)

    async def rollback(self) -> None:
        if self.signaling_state == "have-local-offer":
            self.rollbacks += 1
            self.signaling_state = "stable"

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        if candidate.get("candidate") == "bad":
            raise ValueError("unparseable candidate")
        self.candidates.append(candidate)

    def set_track(self, slot: str, track) -> bool:
        previous = self.tracks.get(slot)
        self.tracks[slot] = track
        if previous is not None and previous is not track:
            previous.stop()
        was_sending = self.sending.get(slot, False)
        self.sending[slot] = True
        return not was_sending

    def remove_track(self, slot: str) -> bool:
        previous = self.tracks.pop(slot, None)
        if previous is not None:
            previous.stop()
        was_sending = self.sending.get(slot, False)
        self.sending[slot] = False
        return was_sending

    def local_track(self, slot: str):
        return self.tracks.get(slot)

    def set_ice_state(self, state: str) -> None:
        self.ice_state = state
        self.emit("icestatechange", state)

    async def close(self) -> None:
        self.closed = True
        self.ice_state = "closed"
        for track in self.tracks.values():
            track.stop()
        self.tracks.clear()


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def connections():
    """Every FakeConnection built by ``connection_factory``, in order."""
    return []


@pytest.fixture
def connection_factory(connections):
    def factory():
        connection = FakeConnection()
        connections.append(connection)
        return connection

    return factory


@pytest.fixture
def call_config():
    """Config with defaults only, so local config files cannot leak in."""
    config = Config()
    config.ice_servers = []
    config.negotiation_timeout = 5.0
    config.ice_restart_timeout = 5.0
    return config


async def drain(*controllers) -> None:
    """Run queued controller events until none are left."""
    while True:
        tasks = [task for c in controllers for task in c.pending_tasks]
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)


async def settle(hub, *sessions, max_rounds: int = 2000) -> None:
    """Run the loop until no broadcast or peer event is pending."""

    def busy() -> bool:
        if hub.pending:
            return True
        return any(
            controller.pending_tasks
            for session in sessions
            for controller in session.registry.controllers()
        )

    quiet = 0
    for _ in range(max_rounds):
        await asyncio.sleep(0)
        quiet = 0 if busy() else quiet + 1
        if quiet >= 3:
            return
    raise AssertionError("Call did not settle")
