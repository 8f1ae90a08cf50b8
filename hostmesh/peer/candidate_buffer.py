"""ICE candidate buffering for one peer session.

Remote ICE candidates can arrive before the remote description they belong to
has been applied (signaling is de-duplicated but not resequenced). Such
candidates are held here and applied, in arrival order, once the remote
description is set.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List

logger = logging.getLogger(__name__)

DEFAULT_SPACING = 0.01  # seconds between buffered candidate applications


@dataclass
class CandidateBufferEntry:
    """A candidate waiting for the remote description.

    Attributes:
        participant_id: Peer the candidate came from.
        candidate: Wire payload of the candidate.
        received_at: Arrival time (monotonic seconds).
    """

    participant_id: str
    candidate: Any
    received_at: float = field(default_factory=time.monotonic)


class CandidateBuffer:
    """Per-session queue of early ICE candidates.

    Attributes:
        participant_id: Peer whose candidates are buffered.
        apply: Coroutine function applying one candidate to the connection.
        spacing: Delay between applications during a flush.
        entries: Candidates waiting to be applied, oldest first.
        ready: True once the remote description is set and the flush started.
    """

    def __init__(
        self,
        participant_id: str,
        apply: Callable[[Any], Awaitable[None]],
        spacing: float = DEFAULT_SPACING,
    ):
        self.participant_id = participant_id
        self.apply = apply
        self.spacing = spacing
        self.entries: List[CandidateBufferEntry] = []
        self.ready = False
        self.applied = 0
        self._flushing = False
        self._epoch = 0

    def __len__(self) -> int:
        return len(self.entries)

    async def offer(self, candidate: Any) -> bool:
        """Apply ``candidate`` now if possible, otherwise enqueue it.

        Returns:
            True if the candidate was applied immediately.
        """
        if not self.ready or self._flushing:
            # Candidates arriving mid-flush queue behind the ones being flushed
            self.entries.append(CandidateBufferEntry(self.participant_id, candidate))
            logger.debug(
                f"Buffered ICE candidate from {self.participant_id} "
                f"(total: {len(self.entries)})"
            )
            return False

        await self._apply_one(candidate)
        return True

    async def flush(self) -> int:
        """Apply buffered candidates in arrival order.

        Must be called once, right after the remote description is set.
        A teardown (``clear``) during the flush stops it.

        Returns:
            Number of candidates applied successfully.
        """
        if self.ready:
            logger.warning(f"Candidate buffer for {self.participant_id} already flushed")
            return 0

        self.ready = True
        self._flushing = True
        epoch = self._epoch
        applied_before = self.applied
        logger.info(
            f"Flushing {len(self.entries)} buffered ICE candidates for {self.participant_id}"
        )

        try:
            first = True
            while self.entries and epoch == self._epoch:
                if not first and self.spacing > 0:
                    await asyncio.sleep(self.spacing)
                    if epoch != self._epoch:
                        break
                first = False
                entry = self.entries.pop(0)
                await self._apply_one(entry.candidate)
        finally:
            if epoch == self._epoch:
                self._flushing = False

        return self.applied - applied_before

    async def _apply_one(self, candidate: Any) -> None:
        try:
            await self.apply(candidate)
            self.applied += 1
        except Exception as e:
            logger.warning(f"Skipping ICE candidate from {self.participant_id}: {e}")

    def clear(self) -> None:
        """Discard every buffered candidate and forget the flush."""
        if self.entries:
            logger.debug(
                f"Discarding {len(self.entries)} buffered candidates for {self.participant_id}"
            )
        self.entries.clear()
        self.ready = False
        self.applied = 0
        self._flushing = False
        self._epoch += 1
