"""Session directory: the single owner of participants, slots and sessions.

The directory holds every PeerSession of a host by participant id, the
participant records shown to the operator, and the ordered slot table of the
composited view. All status events leave the core through its ``events``
emitter:

    participant-joined(id)      participant-left(id)
    stream-attached(id, track)  connection-degraded(id)
    video-lost(id)              video-restored(id)
    connection-failed(id, reason)

Commands from the operator (select, remove, retry, reconnect all, recover
video) enter through the methods of the same name.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from aiortc import RTCPeerConnection
from pyee.asyncio import AsyncIOEventEmitter

from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import RetriesExhaustedError, SignalingError
from hostmesh.media.watchdog import PlaybackSink, PlaybackWatchdog
from hostmesh.peer.heartbeat import HeartbeatMonitor
from hostmesh.peer.reconnect import ReconnectionController
from hostmesh.peer.session import (
    LIVE,
    NEGOTIATING,
    ROLE_HOST,
    PeerSession,
    PeerSessionListener,
    PeerState,
)
from hostmesh.protocol import DEVICE_CLASSES, DEVICE_DESKTOP, MSG_LEAVE

logger = logging.getLogger(__name__)

EVENT_PARTICIPANT_JOINED = "participant-joined"
EVENT_PARTICIPANT_LEFT = "participant-left"
EVENT_STREAM_ATTACHED = "stream-attached"
EVENT_CONNECTION_DEGRADED = "connection-degraded"
EVENT_CONNECTION_FAILED = "connection-failed"


@dataclass
class ParticipantRecord:
    """What the host knows about one participant.

    Attributes:
        id: Participant peer id.
        display_name: Name shown on the participant's tile.
        device_class: "mobile" or "desktop"; set once at join.
        joined_at: Wall-clock time of the first join.
        last_active_at: Wall-clock time of the last signaling or media activity.
        active: Whether the participant is currently connected.
        selected: Whether the operator selected this participant.
        has_media: Whether at least one media track was received.
        error: Terminal error after reconnection gave up, if any.
    """

    id: str
    display_name: str = ""
    device_class: str = DEVICE_DESKTOP
    joined_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)
    active: bool = False
    selected: bool = False
    has_media: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Slot:
    """One position of the composited view.

    A slot is free when it has no participant; a freed slot stays a
    placeholder so its position in the layout does not move.
    """

    index: int
    participant_id: Optional[str] = None
    placeholder: bool = False

    @property
    def free(self) -> bool:
        return self.participant_id is None

    def to_dict(self) -> dict:
        return asdict(self)


class SessionDirectory(PeerSessionListener):
    """Owns all peer sessions of a host session.

    Attributes:
        session_id: The session everything here is scoped to.
        signaling: Multiplexer shared by every peer session.
        tuning: Connection timing knobs.
        events: pyee emitter carrying the status events.
        slots: Ordered slot table (capacity = configured participant count).
        waiting: Participants that arrived while every slot was taken.
        records: participant_id -> ParticipantRecord.
        sessions: participant_id -> the live PeerSession.
    """

    def __init__(
        self,
        session_id: str,
        capacity: int,
        signaling,
        tuning: Optional[ConnectionTuning] = None,
        pc_factory: Callable[[], RTCPeerConnection] = RTCPeerConnection,
        sink_factory: Optional[Callable[[str, object], Optional[PlaybackSink]]] = None,
        events: Optional[AsyncIOEventEmitter] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.session_id = session_id
        self.signaling = signaling
        self.tuning = tuning or ConnectionTuning()
        self.pc_factory = pc_factory
        self.sink_factory = sink_factory
        self.events = events or AsyncIOEventEmitter()

        self.slots: List[Slot] = [Slot(index=i) for i in range(capacity)]
        self.waiting: List[str] = []
        self.records: Dict[str, ParticipantRecord] = {}
        self.sessions: Dict[str, PeerSession] = {}

        self.reconnection = ReconnectionController(self.tuning, on_exhausted=self._on_retries_exhausted)
        self.heartbeat = HeartbeatMonitor(signaling, self.tuning)
        self.watchdog = PlaybackWatchdog(self.tuning, emit=self._emit)

    # ===== Events =====

    def _emit(self, event: str, *args) -> None:
        logger.debug(f"Event {event}: {args}")
        self.events.emit(event, *args)

    def on(self, event: str, handler: Callable) -> None:
        self.events.on(event, handler)

    # ===== Slots =====

    @property
    def capacity(self) -> int:
        return len(self.slots)

    def slot_of(self, participant_id: str) -> Optional[int]:
        for slot in self.slots:
            if slot.participant_id == participant_id:
                return slot.index
        return None

    def assign_slot(self, participant_id: str) -> Optional[int]:
        """Put a participant in the first free slot, or on the waiting list.

        Returns:
            The slot index, or None if the participant is waiting.
        """
        current = self.slot_of(participant_id)
        if current is not None:
            return current

        for slot in self.slots:
            if slot.free:
                slot.participant_id = participant_id
                slot.placeholder = False
                if participant_id in self.waiting:
                    self.waiting.remove(participant_id)
                logger.info(f"Assigned slot {slot.index} to {participant_id}")
                return slot.index

        if participant_id not in self.waiting:
            self.waiting.append(participant_id)
            logger.info(f"All {self.capacity} slots taken, {participant_id} is waiting")
        return None

    def release_slot(self, participant_id: str) -> Optional[int]:
        """Return a participant's slot to the placeholder pool.

        The first waiting participant, if any, takes the freed slot.

        Returns:
            The released slot index, or None if the participant had none.
        """
        if participant_id in self.waiting:
            self.waiting.remove(participant_id)

        index = self.slot_of(participant_id)
        if index is None:
            return None

        slot = self.slots[index]
        slot.participant_id = None
        slot.placeholder = True
        logger.info(f"Released slot {index} held by {participant_id}")

        if self.waiting:
            promoted = self.waiting.pop(0)
            slot.participant_id = promoted
            slot.placeholder = False
            logger.info(f"Promoted waiting participant {promoted} to slot {index}")
        return index

    # ===== Participants and sessions =====

    def register_participant(
        self,
        participant_id: str,
        display_name: Optional[str] = None,
        device_class: Optional[str] = None,
    ) -> Optional[int]:
        """Create or refresh a participant record and give it a slot.

        The device class is fixed by the first join.

        Returns:
            The slot index, or None if the participant is waiting.
        """
        record = self.records.get(participant_id)
        if record is None:
            if device_class not in DEVICE_CLASSES:
                device_class = DEVICE_DESKTOP
            record = ParticipantRecord(
                id=participant_id,
                display_name=display_name or participant_id,
                device_class=device_class,
            )
            self.records[participant_id] = record
            logger.info(f"New participant {participant_id} ({record.device_class})")
        elif display_name:
            record.display_name = display_name

        record.last_active_at = time.time()
        return self.assign_slot(participant_id)

    def get_session(self, participant_id: str) -> Optional[PeerSession]:
        return self.sessions.get(participant_id)

    async def create_session(self, participant_id: str, role: str = ROLE_HOST) -> PeerSession:
        """Create the PeerSession for a participant, replacing any existing one."""
        existing = self.sessions.get(participant_id)
        if existing is not None:
            logger.info(f"Replacing existing session for {participant_id}")
            # Closed while still registered so the usual teardown and events run
            await existing.close("replaced")
            self.sessions.pop(participant_id, None)

        session = PeerSession(
            participant_id,
            role,
            self.signaling,
            pc_factory=self.pc_factory,
            tuning=self.tuning,
            listener=self,
        )
        self.sessions[participant_id] = session

        record = self.records.get(participant_id)
        self.heartbeat.track(session, record.device_class if record else None)
        if record is not None:
            record.error = None
        return session

    async def close_session(self, participant_id: str, reason: str = "closed") -> None:
        """Tear down a participant's session; its record and slot stay."""
        session = self.sessions.get(participant_id)
        if session is None:
            return
        await session.close(reason)

    def record_activity(self, participant_id: str) -> None:
        """Signaling or media activity was seen from ``participant_id``."""
        record = self.records.get(participant_id)
        if record is not None:
            record.last_active_at = time.time()
        self.heartbeat.record_activity(participant_id)

    async def handle_leave(self, participant_id: str) -> None:
        """The participant left on its own; its slot is kept for a rejoin."""
        logger.info(f"Participant {participant_id} left")
        await self.close_session(participant_id, "participant left")
        record = self.records.get(participant_id)
        if record is not None:
            record.active = False

    # ===== Session listener =====

    def on_state_change(self, session: PeerSession, old: PeerState, new: PeerState) -> None:
        participant_id = session.participant_id
        current = self.sessions.get(participant_id)
        if current is not session:
            return
        record = self.records.get(participant_id)

        if new is PeerState.CONNECTED:
            self.reconnection.on_connected(session)
            self.heartbeat.reset(participant_id)
            if record is not None:
                record.active = True
                record.error = None
                record.has_media = bool(session.tracks)
                record.last_active_at = time.time()
            if old in NEGOTIATING:
                self._emit(EVENT_PARTICIPANT_JOINED, participant_id)
                for track in session.tracks:
                    self._attach_stream(session, track)

        elif new is PeerState.DEGRADED:
            self._emit(EVENT_CONNECTION_DEGRADED, participant_id)

        elif new is PeerState.FAILED:
            if record is not None:
                record.active = False
            if old in LIVE:
                self._emit(EVENT_PARTICIPANT_LEFT, participant_id)
            self._drop_sink(participant_id)
            self.reconnection.schedule(session)

        elif new is PeerState.CLOSED:
            self.sessions.pop(participant_id, None)
            self.reconnection.cancel(participant_id)
            self.heartbeat.untrack(participant_id)
            self._drop_sink(participant_id)
            if record is not None:
                record.active = False
            if old in LIVE:
                self._emit(EVENT_PARTICIPANT_LEFT, participant_id)

        elif new in NEGOTIATING and old is PeerState.FAILED:
            # Renegotiation starts with a zeroed heartbeat timer
            self.heartbeat.reset(participant_id)

    def on_track(self, session: PeerSession, track) -> None:
        if self.sessions.get(session.participant_id) is not session:
            return
        self.record_activity(session.participant_id)
        record = self.records.get(session.participant_id)
        if record is not None:
            record.has_media = True
        if session.state in LIVE:
            self._attach_stream(session, track)

    def _attach_stream(self, session: PeerSession, track) -> None:
        participant_id = session.participant_id
        if track.kind == "video" and self.sink_factory is not None:
            sink = self.sink_factory(participant_id, track)
            if sink is not None:
                self.register_sink(sink)
        self._emit(EVENT_STREAM_ATTACHED, participant_id, track)

    def register_sink(self, sink: PlaybackSink) -> None:
        """Hand a rendering target to the playback watchdog.

        Rendered frames count as liveness activity, reported at most once
        per watchdog poll.
        """
        self._drop_sink(sink.participant_id)
        sink.on_activity = self.record_activity
        sink.activity_interval = self.tuning.watchdog_interval
        self.watchdog.register(sink)

    def _drop_sink(self, participant_id: str) -> None:
        sink = self.watchdog.unregister(participant_id)
        if sink is not None:
            sink.on_activity = None
            sink.detach()

    def _on_retries_exhausted(self, session: PeerSession, error: RetriesExhaustedError) -> None:
        record = self.records.get(session.participant_id)
        if record is not None:
            record.error = str(error)
            record.active = False
        self._emit(EVENT_CONNECTION_FAILED, session.participant_id, str(error))

    # ===== Commands =====

    def select_participant(self, participant_id: str) -> bool:
        """Select one participant (the operator's focus); others are deselected."""
        if participant_id not in self.records:
            logger.warning(f"Cannot select unknown participant {participant_id}")
            return False
        for record in self.records.values():
            record.selected = record.id == participant_id
        return True

    async def remove_participant(self, participant_id: str) -> bool:
        """Disconnect a participant and give its slot back."""
        if participant_id not in self.records and participant_id not in self.sessions:
            return False
        logger.info(f"Removing participant {participant_id}")
        try:
            await self.signaling.publish(MSG_LEAVE, {"reason": "removed"}, receiver=participant_id)
        except SignalingError as e:
            logger.warning(f"Could not notify {participant_id} of removal: {e}")
        await self.close_session(participant_id, "removed")
        self.release_slot(participant_id)
        self.records.pop(participant_id, None)
        return True

    async def retry_connection(self, participant_id: str) -> bool:
        """Reconnect a participant now with a fresh retry budget."""
        session = self.sessions.get(participant_id)
        if session is None or session.is_closed:
            return False
        logger.info(f"Manual reconnect of {participant_id}")
        record = self.records.get(participant_id)
        if record is not None:
            record.error = None

        session.retry_count = 0
        session.mark_failed("Manual reconnect")
        self.reconnection.cancel(participant_id)
        return await session.restart()

    async def force_reconnect_all(self) -> int:
        """Reconnect every participant; returns how many restarts were started."""
        restarted = 0
        for participant_id in list(self.sessions):
            if await self.retry_connection(participant_id):
                restarted += 1
        return restarted

    async def recover_video(self, participant_id: str) -> bool:
        """Force playback of a participant's stream to resume."""
        return await self.watchdog.recover(participant_id)

    # ===== Lifecycle and snapshots =====

    def start(self) -> None:
        self.heartbeat.start()
        self.watchdog.start()

    async def stop(self) -> None:
        self.reconnection.cancel_all()
        await self.heartbeat.stop()
        await self.watchdog.stop()
        for participant_id in list(self.sessions):
            await self.close_session(participant_id, "host shutting down")

    def snapshot(self) -> dict:
        """Read-only view of slots and participants."""
        return {
            "session_id": self.session_id,
            "slots": [slot.to_dict() for slot in self.slots],
            "waiting": list(self.waiting),
            "participants": [record.to_dict() for record in self.records.values()],
        }

    def diagnostics(self) -> dict:
        """Snapshot plus per-session and signaling counters."""
        data = self.snapshot()
        data["sessions"] = [session.snapshot() for session in self.sessions.values()]
        data["pending_retries"] = [
            participant_id for participant_id in self.sessions if self.reconnection.is_pending(participant_id)
        ]
        stats = getattr(self.signaling, "stats", None)
        if stats is not None:
            data["signaling"] = stats.as_dict()
        channel_status = getattr(self.signaling, "channel_status", None)
        if channel_status is not None:
            data["channels"] = channel_status()
        return data
