"""Participant role: publishes local media to the host of a session."""

import asyncio
import logging
from typing import Callable, List, Optional

from aiortc import RTCPeerConnection
from pyee.asyncio import AsyncIOEventEmitter

from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import RetriesExhaustedError, SignalingError
from hostmesh.peer.heartbeat import HeartbeatMonitor
from hostmesh.peer.reconnect import ReconnectionController
from hostmesh.peer.session import (
    ROLE_PARTICIPANT,
    PeerSession,
    PeerSessionListener,
    PeerState,
)
from hostmesh.protocol import (
    DEVICE_DESKTOP,
    MSG_HEARTBEAT,
    MSG_ICE_CANDIDATE,
    MSG_LEAVE,
    MSG_OFFER,
    SignalingMessage,
)

logger = logging.getLogger(__name__)


class ParticipantClient(PeerSessionListener):
    """Connects local tracks to the session host.

    The client announces ``ready`` and repeats it until the host offers. A
    failed connection is retried with backoff; an offer from the host always
    wins and replaces whatever connection attempt is in progress.

    Events (on ``events``): ``connected``, ``disconnected``,
    ``connection-failed(reason)``, ``session-ended(reason)``.

    Attributes:
        signaling: Multiplexer scoped to the session.
        local_tracks: Captured tracks sent to the host.
        display_name: Name shown on the host's tile.
        device_class: "mobile" or "desktop".
        session: Current PeerSession, if any.
        host_id: Peer id of the host once it offered.
    """

    def __init__(
        self,
        signaling,
        local_tracks: List,
        display_name: str = "",
        device_class: str = DEVICE_DESKTOP,
        tuning: Optional[ConnectionTuning] = None,
        pc_factory: Callable[[], RTCPeerConnection] = RTCPeerConnection,
        events: Optional[AsyncIOEventEmitter] = None,
    ):
        self.signaling = signaling
        self.local_tracks = list(local_tracks)
        self.display_name = display_name or signaling.local_id
        self.device_class = device_class
        self.tuning = tuning or ConnectionTuning()
        self.pc_factory = pc_factory
        self.events = events or AsyncIOEventEmitter()

        self.session: Optional[PeerSession] = None
        self.host_id: Optional[str] = None
        self.reconnection = ReconnectionController(self.tuning, on_exhausted=self._on_retries_exhausted)
        self.heartbeat = HeartbeatMonitor(signaling, self.tuning)
        self.ended = asyncio.Event()
        self._ready_task: Optional[asyncio.Task] = None

    @property
    def peer_id(self) -> str:
        return self.signaling.local_id

    def ready_payload(self) -> dict:
        return {"displayName": self.display_name, "deviceClass": self.device_class}

    def _new_session(self) -> PeerSession:
        session = PeerSession(
            self.peer_id,
            ROLE_PARTICIPANT,
            self.signaling,
            pc_factory=self.pc_factory,
            tuning=self.tuning,
            listener=self,
            remote_id=self.host_id,
            local_tracks=self.local_tracks,
        )
        session.ready_payload = self.ready_payload
        self.heartbeat.track(session, self.device_class)
        return session

    async def start(self) -> None:
        """Connect the signaling channels and announce ``ready``."""
        self.signaling.subscribe(self.handle_message)
        await self.signaling.start()
        self.heartbeat.start()

        self.session = self._new_session()
        await self.session.announce_ready()
        self._ready_task = asyncio.create_task(self._ready_loop())

    async def _ready_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tuning.ready_resend_interval)
            if self.session is not None:
                await self.session.resend_ready()

    async def handle_message(self, message: SignalingMessage) -> None:
        if self.host_id is not None and message.sender != self.host_id and message.type != MSG_OFFER:
            return

        if message.type == MSG_OFFER:
            await self.on_offer(message)
        elif message.type == MSG_ICE_CANDIDATE:
            if self.session is not None:
                await self.session.add_remote_candidate(message.payload or {})
        elif message.type == MSG_HEARTBEAT:
            self.heartbeat.record_activity(self.peer_id)
        elif message.type == MSG_LEAVE:
            if message.receiver == self.peer_id or message.sender == self.host_id:
                reason = (message.payload or {}).get("reason", "host left")
                logger.info(f"Host ended the connection: {reason}")
                self.events.emit("session-ended", reason)
                self.ended.set()

    async def on_offer(self, message: SignalingMessage) -> bool:
        """Answer an offer, replacing the current session if it is not waiting for one."""
        payload = message.payload or {}
        self.host_id = message.sender
        self.reconnection.cancel(self.peer_id)

        session = self.session
        waiting = (
            session is not None
            and session.state is PeerState.ANSWERING
            and not session.remote_description_set
        )
        if not waiting:
            logger.info(f"Host {message.sender} renegotiates, replacing session")
            retries = session.retry_count if session is not None else 0
            self.session = self._new_session()
            self.session.retry_count = retries
            if session is not None:
                await session.close("renegotiated by host")
            await self.session.prepare_answer()

        return await self.session.accept_offer(payload.get("sdp", ""), message.sender)

    # ===== Session listener =====

    def on_state_change(self, session: PeerSession, old: PeerState, new: PeerState) -> None:
        if session is not self.session:
            return
        if new is PeerState.CONNECTED:
            self.reconnection.on_connected(session)
            self.heartbeat.reset(self.peer_id)
            self.events.emit("connected")
        elif new is PeerState.FAILED:
            self.events.emit("disconnected")
            self.reconnection.schedule(session)
        elif new is PeerState.CLOSED:
            self.heartbeat.untrack(self.peer_id)

    def _on_retries_exhausted(self, session: PeerSession, error: RetriesExhaustedError) -> None:
        self.events.emit("connection-failed", str(error))
        self.ended.set()

    async def stop(self, reason: str = "participant left") -> None:
        """Tell the host we are leaving and release everything."""
        if self._ready_task is not None:
            self._ready_task.cancel()
        self.reconnection.cancel_all()
        await self.heartbeat.stop()
        try:
            await self.signaling.publish(MSG_LEAVE, {"reason": reason}, receiver=self.host_id)
        except SignalingError as e:
            logger.debug(f"Leave not delivered: {e}")
        if self.session is not None:
            await self.session.close(reason)
        await self.signaling.stop()
