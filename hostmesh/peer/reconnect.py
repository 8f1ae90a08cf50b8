"""Reconnection with exponential backoff.

When a peer session fails, the controller waits ``backoff_base * 2**n``
seconds (2 s, 4 s, 8 s with the defaults), increments the session's retry
counter and drives it back into negotiation. Once ``max_retries`` attempts
have failed, the failure is reported as terminal and no further attempt is
made.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import RetriesExhaustedError
from hostmesh.peer.session import PeerSession, PeerState

logger = logging.getLogger(__name__)


class ReconnectionController:
    """Schedules backoff retries for failed peer sessions.

    Attributes:
        tuning: Backoff base and retry cap.
        on_exhausted: Called with (session, RetriesExhaustedError) when a
            session ran out of retries.
    """

    def __init__(
        self,
        tuning: Optional[ConnectionTuning] = None,
        on_exhausted: Optional[Callable[[PeerSession, RetriesExhaustedError], None]] = None,
    ):
        self.tuning = tuning or ConnectionTuning()
        self.on_exhausted = on_exhausted
        self._pending: Dict[str, asyncio.Task] = {}

    def delay_for(self, retry_count: int) -> float:
        """Backoff delay before attempt ``retry_count + 1``."""
        return self.tuning.backoff_base * (2 ** retry_count)

    def is_pending(self, participant_id: str) -> bool:
        task = self._pending.get(participant_id)
        return task is not None and not task.done()

    def schedule(self, session: PeerSession) -> bool:
        """Plan the next attempt for a FAILED session.

        Returns:
            True if a retry was scheduled, False if one is already pending or
            the retries are exhausted.
        """
        if session.state is not PeerState.FAILED:
            return False
        if self.is_pending(session.participant_id):
            return False

        if session.retry_count >= self.tuning.max_retries:
            error = RetriesExhaustedError(session.participant_id, session.retry_count)
            logger.error(str(error))
            if self.on_exhausted is not None:
                self.on_exhausted(session, error)
            return False

        delay = self.delay_for(session.retry_count)
        logger.info(
            f"Reconnecting {session.participant_id} in {delay:.1f}s "
            f"(attempt {session.retry_count + 1}/{self.tuning.max_retries})"
        )
        self._pending[session.participant_id] = asyncio.create_task(
            self._retry_after(session, delay)
        )
        return True

    async def _retry_after(self, session: PeerSession, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._pending.get(session.participant_id) is asyncio.current_task():
            del self._pending[session.participant_id]
        if session.state is not PeerState.FAILED:
            # Closed or recovered while waiting
            return
        session.retry_count += 1
        try:
            await session.restart()
        except Exception as e:
            logger.error(f"Reconnection attempt for {session.participant_id} raised: {e}")
            if not session.mark_failed(str(e)):
                # Still FAILED from before the attempt, so no state listener fires
                self.schedule(session)

    def on_connected(self, session: PeerSession) -> None:
        """A connected session starts with a fresh retry budget."""
        if session.retry_count:
            logger.info(f"{session.participant_id} reconnected after {session.retry_count} retries")
        session.retry_count = 0

    def cancel(self, participant_id: str) -> None:
        task = self._pending.pop(participant_id, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all(self) -> None:
        for participant_id in list(self._pending):
            self.cancel(participant_id)
