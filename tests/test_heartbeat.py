"""Tests for heartbeats and liveness detection."""

import pytest

from fakes import FakeSignaling, FakeTrack, PeerConnectionFactory, settle
from hostmesh.peer.heartbeat import HeartbeatMonitor
from hostmesh.peer.session import ROLE_HOST, PeerSession, PeerState
from hostmesh.protocol import DEVICE_DESKTOP, DEVICE_MOBILE, MSG_HEARTBEAT


@pytest.fixture
def signaling():
    return FakeSignaling()


@pytest.fixture
def factory():
    return PeerConnectionFactory()


async def _connected_session(signaling, factory, participant_id="p1"):
    session = PeerSession(participant_id, ROLE_HOST, signaling, pc_factory=factory)
    await session.start_offer()
    await session.handle_answer("v=0 answer")
    factory.last.receive_track(FakeTrack())
    factory.last.set_connection_state("connected")
    await settle()
    assert session.state is PeerState.CONNECTED
    return session


class TestHeartbeats:
    """Sending on the device-class interval."""

    def test_interval_by_device_class(self, signaling, factory):
        monitor = HeartbeatMonitor(signaling)
        mobile = PeerSession("m", ROLE_HOST, signaling, pc_factory=factory)
        desktop = PeerSession("d", ROLE_HOST, signaling, pc_factory=factory)
        monitor.track(mobile, DEVICE_MOBILE, now=0)
        monitor.track(desktop, DEVICE_DESKTOP, now=0)
        assert monitor.interval_for("m") == 5
        assert monitor.interval_for("d") == 30

    @pytest.mark.asyncio
    async def test_heartbeat_sent_when_due(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_MOBILE, now=0)

        await monitor.check(now=4)
        assert signaling.of_type(MSG_HEARTBEAT) == []

        await monitor.check(now=5)
        assert signaling.of_type(MSG_HEARTBEAT) == [
            (MSG_HEARTBEAT, {"state": "connected"}, "p1")
        ]

    @pytest.mark.asyncio
    async def test_negotiating_sessions_are_skipped(self, signaling, factory):
        session = PeerSession("p1", ROLE_HOST, signaling, pc_factory=factory)
        await session.start_offer()
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_MOBILE, now=0)

        assert await monitor.check(now=100) == []
        assert signaling.of_type(MSG_HEARTBEAT) == []
        assert session.state is PeerState.OFFERING

    @pytest.mark.asyncio
    async def test_undelivered_heartbeat_is_not_an_error(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_DESKTOP, now=0)
        signaling.fail = True
        assert await monitor.check(now=30) == []


class TestLiveness:
    """Degrading and failing silent sessions."""

    @pytest.mark.asyncio
    async def test_silent_desktop_session_degrades(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_DESKTOP, now=0)

        assert await monitor.check(now=60) == []
        assert await monitor.check(now=61) == ["p1"]
        assert session.state is PeerState.DEGRADED

    @pytest.mark.asyncio
    async def test_activity_restores_degraded_session(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_DESKTOP, now=0)
        await monitor.check(now=61)

        monitor.record_activity("p1", now=62)

        assert session.state is PeerState.CONNECTED
        assert await monitor.check(now=63) == []

    @pytest.mark.asyncio
    async def test_silent_mobile_with_dead_ice_fails(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        factory.last.iceConnectionState = "disconnected"
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_MOBILE, now=0)

        assert await monitor.check(now=11) == ["p1"]
        assert session.state is PeerState.FAILED
        assert "disconnected" in session.last_error

    @pytest.mark.asyncio
    async def test_silent_mobile_with_healthy_ice_only_degrades(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        factory.last.iceConnectionState = "connected"
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_MOBILE, now=0)

        await monitor.check(now=11)
        assert session.state is PeerState.DEGRADED

    @pytest.mark.asyncio
    async def test_reset_zeroes_timers(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_DESKTOP, now=0)

        monitor.reset("p1", now=50)

        assert session.last_activity_at == 50
        assert await monitor.check(now=70) == []
        assert signaling.of_type(MSG_HEARTBEAT) == []

    @pytest.mark.asyncio
    async def test_untracked_session_is_ignored(self, signaling, factory):
        session = await _connected_session(signaling, factory)
        monitor = HeartbeatMonitor(signaling)
        monitor.track(session, DEVICE_DESKTOP, now=0)
        monitor.untrack("p1")
        assert await monitor.check(now=1000) == []
        assert session.state is PeerState.CONNECTED
