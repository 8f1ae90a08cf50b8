"""Tests for the participant client."""

import asyncio

import pytest

from fakes import FakeSignaling, FakeTrack, PeerConnectionFactory, make_candidate, settle
from hostmesh.config import ConnectionTuning
from hostmesh.participant import ParticipantClient
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


def _from(sender, msg_type, payload=None, receiver="p1"):
    return SignalingMessage(msg_type, sender, SESSION, payload or {}, receiver=receiver)


def _offer(sender="host-1"):
    return _from(sender, MSG_OFFER, {"sdp": "v=0 offer", "type": "offer"})


@pytest.fixture
def signaling():
    return FakeSignaling(local_id="p1", session_id=SESSION)


@pytest.fixture
def factory():
    return PeerConnectionFactory()


@pytest.fixture
async def client(signaling, factory):
    client = ParticipantClient(
        signaling,
        [FakeTrack()],
        display_name="Ann",
        device_class="mobile",
        tuning=ConnectionTuning(ready_resend_interval=0.01, backoff_base=0.001, candidate_spacing=0),
        pc_factory=factory,
    )
    await client.start()
    yield client
    await client.stop()


def _record(client, event):
    seen = []
    client.events.on(event, lambda *args: seen.append(args))
    return seen


class TestReady:
    """Announcing readiness."""

    @pytest.mark.asyncio
    async def test_start_announces_ready(self, client, signaling):
        assert signaling.handlers == [client.handle_message]
        msg_type, payload, receiver = signaling.of_type(MSG_READY)[0]
        assert receiver is None
        assert payload["displayName"] == "Ann"
        assert payload["deviceClass"] == "mobile"
        assert payload["readyId"] == client.session.ready_id

    @pytest.mark.asyncio
    async def test_ready_repeats_until_offer(self, client, signaling):
        await asyncio.sleep(0.05)
        readies = signaling.of_type(MSG_READY)
        assert len(readies) > 1
        assert {r[1]["readyId"] for r in readies} == {client.session.ready_id}

        await client.handle_message(_offer())
        count = len(signaling.of_type(MSG_READY))
        await asyncio.sleep(0.05)
        assert len(signaling.of_type(MSG_READY)) == count


class TestOfferAnswer:
    """Answering the host."""

    @pytest.mark.asyncio
    async def test_offer_is_answered_and_connects(self, client, signaling, factory):
        connected = _record(client, "connected")

        assert await client.on_offer(_offer()) is True

        assert client.host_id == "host-1"
        assert signaling.of_type(MSG_ANSWER)[-1][2] == "host-1"
        assert factory.last.added_tracks == client.local_tracks

        factory.last.set_connection_state("connected")
        await settle()
        assert client.session.state is PeerState.CONNECTED
        assert connected == [()]

    @pytest.mark.asyncio
    async def test_host_candidates_are_applied(self, client, factory):
        await client.handle_message(_from("host-1", MSG_ICE_CANDIDATE, make_candidate(1)))
        await client.handle_message(_offer())
        await client.handle_message(_from("host-1", MSG_ICE_CANDIDATE, make_candidate(2)))
        assert [c.ip for c in factory.last.candidates] == ["10.0.0.1", "10.0.0.2"]

    @pytest.mark.asyncio
    async def test_renegotiation_replaces_session(self, client, factory):
        await client.handle_message(_offer())
        factory.last.set_connection_state("connected")
        await settle()
        first = client.session

        await client.handle_message(_offer())

        assert client.session is not first
        assert first.state is PeerState.CLOSED
        assert client.session.remote_description_set is True
        assert factory.created[0].closed is True

    @pytest.mark.asyncio
    async def test_other_senders_ignored_once_host_known(self, client):
        ended = _record(client, "session-ended")
        await client.handle_message(_offer())
        await client.handle_message(_from("intruder", MSG_LEAVE, receiver=None))
        assert ended == []
        assert not client.ended.is_set()


class TestEnding:
    """Leave, failure and exhaustion."""

    @pytest.mark.asyncio
    async def test_leave_from_host_ends_session(self, client):
        ended = _record(client, "session-ended")
        await client.handle_message(_offer())
        await client.handle_message(_from("host-1", MSG_LEAVE, {"reason": "removed"}))
        assert ended == [("removed",)]
        assert client.ended.is_set()

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_session_alive(self, client, factory):
        await client.handle_message(_offer())
        factory.last.set_connection_state("connected")
        await settle()
        client.session.mark_degraded()

        await client.handle_message(_from("host-1", MSG_HEARTBEAT, {"state": "connected"}))

        assert client.session.state is PeerState.CONNECTED

    @pytest.mark.asyncio
    async def test_failure_announces_new_ready(self, client, signaling, factory):
        disconnected = _record(client, "disconnected")
        await client.handle_message(_offer())
        factory.last.set_connection_state("connected")
        await settle()
        first_ready_id = client.session.ready_id

        factory.last.set_connection_state("failed")
        await settle()
        await asyncio.sleep(0.05)

        assert disconnected == [()]
        assert client.session.state is PeerState.ANSWERING
        assert client.session.retry_count == 1
        assert signaling.of_type(MSG_READY)[-1][1]["readyId"] != first_ready_id

    @pytest.mark.asyncio
    async def test_exhausted_retries_end_client(self, client):
        failed = _record(client, "connection-failed")
        client.session.retry_count = 3
        client.session.mark_failed("transport lost")
        assert len(failed) == 1
        assert client.ended.is_set()

    @pytest.mark.asyncio
    async def test_stop_sends_leave_to_host(self, signaling, factory):
        client = ParticipantClient(signaling, [FakeTrack()], pc_factory=factory)
        await client.start()
        await client.handle_message(_offer())

        await client.stop()

        assert signaling.published[-1] == (MSG_LEAVE, {"reason": "participant left"}, "host-1")
        assert client.session.state is PeerState.CLOSED
        assert client.display_name == "p1"
