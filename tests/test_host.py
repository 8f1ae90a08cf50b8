"""Tests for host-side signaling handling."""

import pytest

from fakes import FakeSignaling, FakeTrack, PeerConnectionFactory, make_candidate, settle
from hostmesh.config import ConnectionTuning
from hostmesh.directory import EVENT_PARTICIPANT_JOINED, SessionDirectory
from hostmesh.host import HostController
from hostmesh.peer.session import PeerState
from hostmesh.protocol import (
    MSG_ANSWER,
    MSG_HEARTBEAT,
    MSG_ICE_CANDIDATE,
    MSG_LEAVE,
    MSG_OFFER,
    MSG_READY,
    SignalingMessage,
)

SESSION = "abc123def456"


def _msg(msg_type, sender="p1", payload=None):
    return SignalingMessage(msg_type, sender, SESSION, payload or {}, receiver="host-1")


def _ready(sender="p1", ready_id="r1", **extra):
    return _msg(MSG_READY, sender, {"displayName": "Ann", "deviceClass": "mobile", "readyId": ready_id, **extra})


@pytest.fixture
def signaling():
    return FakeSignaling(local_id="host-1", session_id=SESSION)


@pytest.fixture
def factory():
    return PeerConnectionFactory()


@pytest.fixture
async def directory(signaling, factory):
    directory = SessionDirectory(
        SESSION,
        capacity=1,
        signaling=signaling,
        tuning=ConnectionTuning(candidate_spacing=0),
        pc_factory=factory,
    )
    yield directory
    await directory.stop()


@pytest.fixture
def host(directory, signaling):
    return HostController(directory, signaling)


class TestReadyHandshake:
    """ready -> offer -> answer -> connected."""

    @pytest.mark.asyncio
    async def test_ready_to_joined(self, host, directory, signaling, factory):
        joined = []
        directory.on(EVENT_PARTICIPANT_JOINED, joined.append)

        await host.process(_ready())
        assert signaling.of_type(MSG_OFFER)[-1][2] == "p1"

        await host.process(_msg(MSG_ICE_CANDIDATE, payload=make_candidate(1)))
        await host.process(_msg(MSG_ANSWER, payload={"sdp": "v=0 answer", "type": "answer"}))
        assert [c.ip for c in factory.last.candidates] == ["10.0.0.1"]

        factory.last.receive_track(FakeTrack())
        factory.last.set_connection_state("connected")
        await settle()

        assert directory.get_session("p1").state is PeerState.CONNECTED
        assert joined == ["p1"]
        record = directory.records["p1"]
        assert record.display_name == "Ann"
        assert record.device_class == "mobile"

    @pytest.mark.asyncio
    async def test_repeated_ready_resends_offer(self, host, directory, signaling, factory):
        await host.process(_ready())
        session = directory.get_session("p1")

        await host.process(_ready())

        assert directory.get_session("p1") is session
        assert len(factory.created) == 1
        assert len(signaling.of_type(MSG_OFFER)) == 2

    @pytest.mark.asyncio
    async def test_repeated_ready_after_connect_is_ignored(self, host, directory, signaling, factory):
        await host.process(_ready())
        await host.process(_msg(MSG_ANSWER, payload={"sdp": "v=0 answer"}))
        factory.last.receive_track(FakeTrack())
        factory.last.set_connection_state("connected")
        await settle()

        assert await host.on_ready("p1", {"readyId": "r1"}) is None
        assert len(signaling.of_type(MSG_OFFER)) == 1

    @pytest.mark.asyncio
    async def test_new_ready_id_replaces_session(self, host, directory, factory):
        await host.process(_ready(ready_id="r1"))
        first = directory.get_session("p1")

        await host.process(_ready(ready_id="r2"))

        second = directory.get_session("p1")
        assert second is not first
        assert first.state is PeerState.CLOSED
        assert second.state is PeerState.OFFERING
        assert second.ready_id == "r2"
        assert factory.created[0].closed is True

    @pytest.mark.asyncio
    async def test_overflow_participant_waits_until_promoted(self, host, directory, signaling):
        await host.process(_ready("p1"))
        await host.process(_ready("p2"))

        assert directory.get_session("p2") is None
        assert directory.waiting == ["p2"]
        assert [m[2] for m in signaling.of_type(MSG_OFFER)] == ["p1"]

        await directory.remove_participant("p1")
        await host.process(_ready("p2"))

        assert directory.get_session("p2").state is PeerState.OFFERING
        assert directory.slot_of("p2") == 0


class TestOtherMessages:
    """Leave, heartbeat and unexpected messages."""

    @pytest.mark.asyncio
    async def test_leave_closes_session(self, host, directory):
        await host.process(_ready())
        await host.process(_msg(MSG_LEAVE))
        assert directory.get_session("p1") is None
        assert directory.slot_of("p1") == 0

    @pytest.mark.asyncio
    async def test_heartbeat_records_activity(self, host, directory):
        await host.process(_ready())
        session = directory.get_session("p1")
        session.last_activity_at = 0
        await host.process(_msg(MSG_HEARTBEAT, payload={"state": "answering"}))
        assert session.last_activity_at > 0

    @pytest.mark.asyncio
    async def test_messages_without_session_are_dropped(self, host, factory):
        await host.process(_msg(MSG_ANSWER, payload={"sdp": "v=0"}))
        await host.process(_msg(MSG_ICE_CANDIDATE, payload=make_candidate(1)))
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_offer_from_participant_is_ignored(self, host, directory):
        await host.process(_ready())
        await host.process(_msg(MSG_OFFER, payload={"sdp": "v=0"}))
        assert directory.get_session("p1").state is PeerState.OFFERING

    @pytest.mark.asyncio
    async def test_handle_message_runs_in_task(self, host, directory):
        host.handle_message(_ready())
        await settle()
        assert directory.get_session("p1") is not None


class TestLifecycle:
    """Start and stop."""

    @pytest.mark.asyncio
    async def test_start_subscribes_and_stop_broadcasts_leave(self, host, signaling, directory):
        await host.start()
        assert signaling.started is True
        assert signaling.handlers == [host.handle_message]

        await host.process(_ready())
        await host.stop()

        assert signaling.published[-1] == (MSG_LEAVE, {"reason": "host ended the session"}, None)
        assert signaling.started is False
        assert directory.sessions == {}
