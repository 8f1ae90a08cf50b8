"""Playback health watchdog.

A received stream can be connected and still not render (a decoder that
stopped pulling frames, a paused sink). The watchdog polls every registered
sink on a fixed interval and treats a sink whose last rendered frame is at
least one interval old as stalled:

- every stall forces a resume
- stall ``threshold``: also emit ``video-lost`` once and stop auto-resuming
- frames advancing again after any stall: reset and emit ``video-restored``
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from aiortc.mediastreams import MediaStreamError

from hostmesh.config import ConnectionTuning

logger = logging.getLogger(__name__)

EVENT_VIDEO_LOST = "video-lost"
EVENT_VIDEO_RESTORED = "video-restored"


class PlaybackSink(ABC):
    """Rendering target bound to one participant.

    Attributes:
        participant_id: Participant whose stream is rendered here.
        attached_stream_id: Id of the attached stream, or None.
        last_frame_at: Monotonic time of the last rendered frame.
        consecutive_stall_count: Stalled polls in a row (kept by the watchdog).
        attached_at: Monotonic time the stream was attached.
        on_activity: Called with the participant id when frames advance, at
            most once per ``activity_interval`` seconds.
    """

    def __init__(self, participant_id: str):
        self.participant_id = participant_id
        self.attached_stream_id: Optional[str] = None
        self.last_frame_at: Optional[float] = None
        self.consecutive_stall_count = 0
        self.attached_at: Optional[float] = None
        self.on_activity: Optional[Callable[[str], None]] = None
        self.activity_interval = 0.0
        self._activity_reported_at: Optional[float] = None

    def attach(self, stream_id: str, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        self.attached_stream_id = stream_id
        self.attached_at = now
        self.last_frame_at = now
        self.consecutive_stall_count = 0
        self._activity_reported_at = None

    def detach(self) -> None:
        self.attached_stream_id = None
        self.attached_at = None
        self.last_frame_at = None
        self.consecutive_stall_count = 0

    def mark_frame(self, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        self.last_frame_at = now
        if self.on_activity is None:
            return
        reported = self._activity_reported_at
        if reported is not None and now - reported < self.activity_interval:
            return
        self._activity_reported_at = now
        try:
            self.on_activity(self.participant_id)
        except Exception as e:
            logger.error(f"Activity callback failed for {self.participant_id}: {e}")

    @abstractmethod
    async def resume(self) -> bool:
        """Force playback to continue; True if the sink accepted the request."""


class TrackSink(PlaybackSink):
    """Sink that pulls frames from an aiortc track.

    Each received frame counts as rendered and is passed to ``on_frame`` (the
    compositor, when there is one).
    """

    def __init__(self, participant_id: str, track, on_frame: Optional[Callable] = None):
        super().__init__(participant_id)
        self.track = track
        self.on_frame = on_frame
        self.frames = 0
        self._task: Optional[asyncio.Task] = None
        self.attach(track.id)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            try:
                frame = await self.track.recv()
            except MediaStreamError:
                logger.info(f"Track from {self.participant_id} ended")
                return
            self.frames += 1
            self.mark_frame()
            if self.on_frame is not None:
                try:
                    self.on_frame(self.participant_id, frame)
                except Exception as e:
                    logger.error(f"Frame consumer failed for {self.participant_id}: {e}")

    async def resume(self) -> bool:
        if self.track.readyState == "ended":
            return False
        if self._task is not None and not self._task.done():
            # Restart a consumer that stopped pulling frames
            self._task.cancel()
        self._task = asyncio.create_task(self._consume())
        return True

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.detach()


class PlaybackWatchdog:
    """Polls playback sinks and escalates stalls.

    Attributes:
        tuning: Poll interval and stall threshold.
        emit: Called as ``emit(event, participant_id)``.
        sinks: participant_id -> PlaybackSink.
    """

    def __init__(self, tuning: Optional[ConnectionTuning] = None, emit: Optional[Callable] = None):
        self.tuning = tuning or ConnectionTuning()
        self.emit = emit or (lambda event, participant_id: None)
        self.sinks: Dict[str, PlaybackSink] = {}
        self._lost: set = set()
        self._task: Optional[asyncio.Task] = None

    def register(self, sink: PlaybackSink) -> None:
        self.sinks[sink.participant_id] = sink
        self._lost.discard(sink.participant_id)

    def unregister(self, participant_id: str) -> Optional[PlaybackSink]:
        self._lost.discard(participant_id)
        return self.sinks.pop(participant_id, None)

    def is_lost(self, participant_id: str) -> bool:
        return participant_id in self._lost

    def is_stalled(self, sink: PlaybackSink, now: float) -> bool:
        if sink.attached_stream_id is None or sink.last_frame_at is None:
            return False
        return now - sink.last_frame_at >= self.tuning.watchdog_interval

    async def poll_once(self, now: Optional[float] = None) -> None:
        """Evaluate every sink once."""
        now = time.monotonic() if now is None else now
        for participant_id, sink in list(self.sinks.items()):
            if sink.attached_stream_id is None:
                continue

            if not self.is_stalled(sink, now):
                if sink.consecutive_stall_count > 0:
                    logger.info(f"Playback for {participant_id} recovered")
                    sink.consecutive_stall_count = 0
                    self._lost.discard(participant_id)
                    self.emit(EVENT_VIDEO_RESTORED, participant_id)
                continue

            if participant_id in self._lost:
                continue

            sink.consecutive_stall_count += 1
            await self._resume(sink)
            if sink.consecutive_stall_count >= self.tuning.stall_threshold:
                self._lost.add(participant_id)
                logger.warning(
                    f"Playback for {participant_id} lost after "
                    f"{sink.consecutive_stall_count} stalled checks"
                )
                self.emit(EVENT_VIDEO_LOST, participant_id)
                continue

            logger.info(
                f"Playback for {participant_id} stalled "
                f"({sink.consecutive_stall_count}/{self.tuning.stall_threshold}), resumed"
            )

    async def recover(self, participant_id: str) -> bool:
        """Manual resume; frames advancing afterwards fire ``video-restored``."""
        sink = self.sinks.get(participant_id)
        if sink is None:
            return False
        return await self._resume(sink)

    async def _resume(self, sink: PlaybackSink) -> bool:
        try:
            return await sink.resume()
        except Exception as e:
            logger.warning(f"Resume failed for {sink.participant_id}: {e}")
            return False

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tuning.watchdog_interval)
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Playback watchdog poll failed: {e}")

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
