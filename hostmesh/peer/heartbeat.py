"""Heartbeat sending and liveness detection.

Each tracked session sends a heartbeat every 5 s (mobile) or 30 s (other
devices). Heartbeats and inbound media reset the session's
``last_activity_at``; a session silent for more than ``liveness_factor``
intervals is marked degraded. For mobile peers the ICE state is checked as
well and a session whose ICE transport is no longer connected is failed.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import SignalingError
from hostmesh.peer.session import LIVE, PeerSession, PeerState
from hostmesh.protocol import DEVICE_MOBILE, MSG_HEARTBEAT

logger = logging.getLogger(__name__)

ICE_HEALTHY_STATES = ("connected", "completed")


class HeartbeatMonitor:
    """Keeps heartbeats flowing and degrades silent sessions.

    Attributes:
        signaling: Multiplexer used to send heartbeats.
        tuning: Intervals and liveness factor.
    """

    def __init__(self, signaling, tuning: Optional[ConnectionTuning] = None, check_period: float = 1.0):
        self.signaling = signaling
        self.tuning = tuning or ConnectionTuning()
        self.check_period = check_period
        self._sessions: Dict[str, PeerSession] = {}
        self._device_classes: Dict[str, str] = {}
        self._last_sent: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None

    def track(self, session: PeerSession, device_class: Optional[str] = None, now: Optional[float] = None) -> None:
        """Start monitoring ``session``; the timers start at zero."""
        self._sessions[session.participant_id] = session
        self._device_classes[session.participant_id] = device_class or ""
        self.reset(session.participant_id, now)

    def untrack(self, participant_id: str) -> None:
        self._sessions.pop(participant_id, None)
        self._device_classes.pop(participant_id, None)
        self._last_sent.pop(participant_id, None)

    def reset(self, participant_id: str, now: Optional[float] = None) -> None:
        """Zero the heartbeat and liveness timers (on renegotiation)."""
        session = self._sessions.get(participant_id)
        if session is None:
            return
        now = time.monotonic() if now is None else now
        session.last_activity_at = now
        self._last_sent[participant_id] = now

    def interval_for(self, participant_id: str) -> float:
        return self.tuning.heartbeat_interval(self._device_classes.get(participant_id))

    def record_activity(self, participant_id: str, now: Optional[float] = None) -> None:
        """A heartbeat or media arrived from ``participant_id``."""
        session = self._sessions.get(participant_id)
        if session is not None:
            session.record_activity(now)

    async def check(self, now: Optional[float] = None) -> List[str]:
        """Send due heartbeats and evaluate liveness once.

        Returns:
            Ids of sessions that were degraded or failed during this check.
        """
        now = time.monotonic() if now is None else now
        affected = []

        for participant_id, session in list(self._sessions.items()):
            if session.state not in LIVE:
                continue
            interval = self.interval_for(participant_id)

            if now - self._last_sent.get(participant_id, 0.0) >= interval:
                self._last_sent[participant_id] = now
                await self._send_heartbeat(session)

            silent_for = now - session.last_activity_at
            if silent_for <= interval * self.tuning.liveness_factor:
                continue

            if session.state is PeerState.CONNECTED:
                logger.warning(f"No activity from {participant_id} for {silent_for:.1f}s")
                session.mark_degraded()
                affected.append(participant_id)

            if self._device_classes.get(participant_id) == DEVICE_MOBILE:
                ice_state = session.ice_connection_state
                if ice_state not in ICE_HEALTHY_STATES:
                    session.mark_failed(f"Mobile peer silent with ICE state {ice_state}")
                    if participant_id not in affected:
                        affected.append(participant_id)

        return affected

    async def _send_heartbeat(self, session: PeerSession) -> None:
        try:
            await self.signaling.publish(MSG_HEARTBEAT, {"state": session.state.value}, receiver=session.remote_id)
        except SignalingError as e:
            logger.debug(f"Heartbeat to {session.participant_id} not delivered: {e}")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.check_period)
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Liveness check failed: {e}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
