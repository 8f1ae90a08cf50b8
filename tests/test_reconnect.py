"""Tests for backoff reconnection."""

import asyncio

import pytest

from fakes import FakeSignaling, FakeTrack, PeerConnectionFactory, settle
from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import RetriesExhaustedError
from hostmesh.peer.reconnect import ReconnectionController
from hostmesh.peer.session import ROLE_HOST, PeerSession, PeerSessionListener, PeerState


class RescheduleOnFailure(PeerSessionListener):
    """Wires FAILED transitions back into the controller, as the directory does."""

    def __init__(self):
        self.controller = None

    def on_state_change(self, session, old, new):
        if new is PeerState.FAILED:
            self.controller.schedule(session)


def _failing_session(factory, listener=None):
    return PeerSession(
        "p1",
        ROLE_HOST,
        FakeSignaling(),
        pc_factory=factory,
        listener=listener,
    )


class TestBackoff:
    """Delay schedule."""

    def test_default_delays_double(self):
        controller = ReconnectionController()
        assert [controller.delay_for(n) for n in range(3)] == [2, 4, 8]

    def test_custom_base(self):
        controller = ReconnectionController(ConnectionTuning(backoff_base=0.5))
        assert controller.delay_for(2) == 2.0


class TestSchedule:
    """Scheduling rules and retry execution."""

    @pytest.mark.asyncio
    async def test_only_failed_sessions_are_scheduled(self):
        controller = ReconnectionController()
        session = _failing_session(PeerConnectionFactory())
        assert controller.schedule(session) is False

    @pytest.mark.asyncio
    async def test_second_schedule_is_ignored_while_pending(self):
        controller = ReconnectionController(ConnectionTuning(backoff_base=10))
        session = _failing_session(PeerConnectionFactory(fail_on={"createOffer": 2}))
        await session.start_offer()

        assert controller.schedule(session) is True
        assert controller.schedule(session) is False
        assert controller.is_pending("p1")
        controller.cancel_all()

    @pytest.mark.asyncio
    async def test_retry_restarts_and_counts(self):
        controller = ReconnectionController(ConnectionTuning(backoff_base=0.001))
        factory = PeerConnectionFactory()
        session = _failing_session(factory)
        await session.start_offer()
        session.mark_failed("test")

        controller.schedule(session)
        await asyncio.sleep(0.05)

        assert session.retry_count == 1
        assert session.state is PeerState.OFFERING
        assert len(factory.created) == 2
        assert not controller.is_pending("p1")

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_retry(self):
        controller = ReconnectionController(ConnectionTuning(backoff_base=0.02))
        factory = PeerConnectionFactory()
        session = _failing_session(factory)
        await session.start_offer()
        session.mark_failed("test")

        controller.schedule(session)
        controller.cancel("p1")
        await asyncio.sleep(0.05)

        assert session.state is PeerState.FAILED
        assert session.retry_count == 0
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_session_closed_while_waiting_is_left_alone(self):
        controller = ReconnectionController(ConnectionTuning(backoff_base=0.01))
        factory = PeerConnectionFactory()
        session = _failing_session(factory)
        await session.start_offer()
        session.mark_failed("test")

        controller.schedule(session)
        await session.close()
        await asyncio.sleep(0.05)

        assert session.state is PeerState.CLOSED
        assert session.retry_count == 0

    @pytest.mark.asyncio
    async def test_on_connected_resets_budget(self):
        controller = ReconnectionController()
        session = _failing_session(PeerConnectionFactory())
        session.retry_count = 2
        controller.on_connected(session)
        assert session.retry_count == 0


class TestExhaustion:
    """Three failed attempts in a row are terminal."""

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self):
        exhausted = asyncio.Event()
        errors = []

        def on_exhausted(session, error):
            errors.append(error)
            exhausted.set()

        listener = RescheduleOnFailure()
        controller = ReconnectionController(
            ConnectionTuning(backoff_base=0.001), on_exhausted=on_exhausted
        )
        listener.controller = controller
        factory = PeerConnectionFactory(fail_on={"createOffer": 100})
        session = _failing_session(factory, listener)

        await session.start_offer()
        await asyncio.wait_for(exhausted.wait(), timeout=2)
        await settle()

        assert len(errors) == 1
        assert isinstance(errors[0], RetriesExhaustedError)
        assert errors[0].participant_id == "p1"
        assert errors[0].attempts == 3
        assert session.retry_count == 3
        # One initial connection plus three retries
        assert len(factory.created) == 4
        assert session.state is PeerState.FAILED
        assert not controller.is_pending("p1")

    @pytest.mark.asyncio
    async def test_reconnect_in_between_restores_budget(self):
        listener = RescheduleOnFailure()
        controller = ReconnectionController(ConnectionTuning(backoff_base=0.001))
        listener.controller = controller
        factory = PeerConnectionFactory()
        session = _failing_session(factory, listener)

        await session.start_offer()
        session.mark_failed("test")
        await asyncio.sleep(0.05)
        assert session.retry_count == 1

        await session.handle_answer("v=0 answer")
        factory.last.receive_track(FakeTrack())
        factory.last.set_connection_state("connected")
        await settle()
        assert session.state is PeerState.CONNECTED
        controller.on_connected(session)

        assert session.retry_count == 0
