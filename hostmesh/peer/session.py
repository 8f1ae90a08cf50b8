"""Per-participant peer session state machine.

A PeerSession owns one aiortc RTCPeerConnection and drives the
offer/answer/ICE exchange for a single participant:

    IDLE -> OFFERING | ANSWERING -> CONNECTED <-> DEGRADED -> FAILED -> CLOSED
                                                  FAILED -> OFFERING | ANSWERING

- The host side offers (``start_offer``) after the participant announced
  itself with ``ready``.
- The participant side answers (``announce_ready`` then ``accept_offer``).
- ``restart`` (FAILED -> negotiating) is only called by the reconnection
  controller; ``close`` tears everything down from any state.
- A negotiation that has not connected after ``negotiation_timeout`` fails.

Every mutating coroutine runs under a per-session lock and captures the
negotiation generation before its first await. When the generation or the
state changed while it was suspended (a teardown or restart happened), the
continuation returns without touching the session.
"""

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import InvalidTransitionError, NegotiationError, SignalingError
from hostmesh.peer.candidate_buffer import CandidateBuffer
from hostmesh.protocol import MSG_ANSWER, MSG_OFFER, MSG_READY

logger = logging.getLogger(__name__)

ROLE_HOST = "host"
ROLE_PARTICIPANT = "participant"

# Negotiation steps are retried once immediately before the session fails
NEGOTIATION_ATTEMPTS = 2


class PeerState(Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"
    CLOSED = "closed"


NEGOTIATING: FrozenSet[PeerState] = frozenset({PeerState.OFFERING, PeerState.ANSWERING})
LIVE: FrozenSet[PeerState] = frozenset({PeerState.CONNECTED, PeerState.DEGRADED})

TRANSITIONS: Dict[PeerState, FrozenSet[PeerState]] = {
    PeerState.IDLE: frozenset({PeerState.OFFERING, PeerState.ANSWERING, PeerState.CLOSED}),
    PeerState.OFFERING: frozenset({PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED}),
    PeerState.ANSWERING: frozenset({PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED}),
    PeerState.CONNECTED: frozenset({PeerState.DEGRADED, PeerState.FAILED, PeerState.CLOSED}),
    PeerState.DEGRADED: frozenset({PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED}),
    PeerState.FAILED: frozenset({PeerState.OFFERING, PeerState.ANSWERING, PeerState.CLOSED}),
    PeerState.CLOSED: frozenset(),
}


class PeerSessionListener:
    """Receives lifecycle notifications from peer sessions."""

    def on_state_change(self, session: "PeerSession", old: PeerState, new: PeerState) -> None:
        pass

    def on_track(self, session: "PeerSession", track) -> None:
        pass


def parse_candidate(payload: Dict[str, Any]):
    """Convert a browser-style candidate payload into an aiortc RTCIceCandidate.

    Returns None for an end-of-candidates marker (empty candidate string).
    """
    sdp = (payload or {}).get("candidate") or ""
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if not sdp:
        return None
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class PeerSession:
    """Connection state for one participant.

    Attributes:
        participant_id: Participant this session is about.
        remote_id: Peer id signaling is addressed to (the participant on the
            host side, the host on the participant side).
        role: ROLE_HOST or ROLE_PARTICIPANT.
        state: Current PeerState.
        local_description_set: Whether the local SDP has been applied.
        remote_description_set: Whether the remote SDP has been applied.
        retry_count: Reconnection attempts made so far (kept by the controller).
        last_activity_at: Monotonic time of the last heartbeat or media activity.
        tracks: Inbound media tracks attached on the current connection.
        candidate_buffer: Early ICE candidates for the current negotiation.
        last_error: Description of the last failure, if any.
        ready_payload: Builds the body of ``ready`` announcements.
        ready_id: Id of the ready attempt this negotiation answers.
    """

    def __init__(
        self,
        participant_id: str,
        role: str,
        signaling,
        pc_factory: Callable[[], RTCPeerConnection] = RTCPeerConnection,
        tuning: Optional[ConnectionTuning] = None,
        listener: Optional[PeerSessionListener] = None,
        remote_id: Optional[str] = None,
        local_tracks: Optional[List] = None,
    ):
        if role not in (ROLE_HOST, ROLE_PARTICIPANT):
            raise ValueError(f"Unknown role: {role}")
        self.participant_id = participant_id
        self.remote_id = remote_id if remote_id is not None else participant_id
        self.role = role
        self.signaling = signaling
        self.pc_factory = pc_factory
        self.tuning = tuning or ConnectionTuning()
        self.listener = listener or PeerSessionListener()
        self.local_tracks = list(local_tracks or [])

        self.state = PeerState.IDLE
        self.pc: Optional[RTCPeerConnection] = None
        self.local_description_set = False
        self.remote_description_set = False
        self.retry_count = 0
        self.last_activity_at = time.monotonic()
        self.tracks: List = []
        self.last_error: Optional[str] = None
        # Ready handshake: the participant stamps each attempt, the host remembers it
        self.ready_payload: Callable[[], dict] = dict
        self.ready_id: Optional[str] = None
        self._ready_message: Optional[dict] = None
        self.candidate_buffer = CandidateBuffer(
            participant_id, self._apply_candidate, spacing=self.tuning.candidate_spacing
        )

        self._transport_connected = False
        self._generation = 0
        self._negotiation_timer: Optional[asyncio.TimerHandle] = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"PeerSession({self.participant_id!r}, role={self.role}, state={self.state.value})"

    # ===== State helpers =====

    @property
    def is_closed(self) -> bool:
        return self.state is PeerState.CLOSED

    @property
    def is_negotiating(self) -> bool:
        return self.state in NEGOTIATING

    @property
    def ice_connection_state(self) -> str:
        if self.pc is None:
            return "new"
        return self.pc.iceConnectionState

    @property
    def generation(self) -> int:
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation or self.state is PeerState.CLOSED

    def _transition(self, new: PeerState) -> None:
        old = self.state
        if new not in TRANSITIONS[old]:
            raise InvalidTransitionError(self.participant_id, old, new)
        self.state = new
        logger.info(f"Peer {self.participant_id}: {old.value} -> {new.value}")
        try:
            self.listener.on_state_change(self, old, new)
        except Exception as e:
            logger.error(f"State listener failed for {self.participant_id}: {e}")

    # ===== Negotiation =====

    async def start_offer(self) -> bool:
        """Host side: create a connection and send an offer.

        Allowed from IDLE (first negotiation) and FAILED (reconnection).

        Returns:
            True if the offer was sent.
        """
        async with self._lock:
            if self.state not in (PeerState.IDLE, PeerState.FAILED):
                logger.debug(f"Ignoring start_offer for {self.participant_id} in {self.state.value}")
                return False
            generation = await self._begin_negotiation(PeerState.OFFERING)
            return await self._negotiate(self._send_offer, generation, "Offer")

    async def prepare_answer(self) -> bool:
        """Participant side: get a connection ready for an unsolicited offer.

        Used when the host renegotiates on its own; no ``ready`` is sent.
        """
        async with self._lock:
            if self.state not in (PeerState.IDLE, PeerState.FAILED):
                return False
            await self._begin_negotiation(PeerState.ANSWERING)
            return True

    async def announce_ready(self, payload: Optional[dict] = None) -> bool:
        """Participant side: prepare a connection and tell the host we are ready.

        Allowed from IDLE and FAILED. Every announcement carries a fresh
        ``readyId`` so the host can tell a repeat from a new attempt. The
        message is broadcast, since the host id may have changed.
        """
        async with self._lock:
            if self.state not in (PeerState.IDLE, PeerState.FAILED):
                logger.debug(f"Ignoring ready for {self.participant_id} in {self.state.value}")
                return False
            generation = await self._begin_negotiation(PeerState.ANSWERING)
            base = payload if payload is not None else self.ready_payload()
            self.ready_id = uuid.uuid4().hex[:12]
            self._ready_message = {**base, "readyId": self.ready_id}
            try:
                await self.signaling.publish(MSG_READY, self._ready_message)
            except SignalingError as e:
                # The ready message is repeated until an offer arrives
                logger.warning(f"Could not announce ready: {e}")
            return not self._is_stale(generation)

    async def resend_ready(self) -> bool:
        """Repeat the last ``ready`` while still waiting for an offer."""
        if self.state is not PeerState.ANSWERING or self.remote_description_set:
            return False
        if self._ready_message is None:
            return False
        try:
            await self.signaling.publish(MSG_READY, self._ready_message)
            return True
        except SignalingError as e:
            logger.debug(f"Could not repeat ready: {e}")
            return False

    async def resend_offer(self) -> bool:
        """Host side: repeat the pending offer for a participant still waiting."""
        async with self._lock:
            if (
                self.state is not PeerState.OFFERING
                or not self.local_description_set
                or self.remote_description_set
            ):
                return False
            try:
                await self.signaling.publish(
                    MSG_OFFER,
                    {"sdp": self.pc.localDescription.sdp, "type": self.pc.localDescription.type},
                    receiver=self.remote_id,
                )
                return True
            except SignalingError as e:
                logger.debug(f"Could not repeat offer to {self.participant_id}: {e}")
                return False

    async def accept_offer(self, sdp: str, sender: str) -> bool:
        """Participant side: apply the host offer and answer it."""
        async with self._lock:
            if self.state is not PeerState.ANSWERING or self.remote_description_set:
                logger.debug(
                    f"Ignoring offer for {self.participant_id} in {self.state.value}"
                )
                return False
            self.remote_id = sender
            generation = self._generation

            async def answer(gen):
                await self._set_remote(gen, RTCSessionDescription(sdp=sdp, type="offer"))
                if self._is_stale(gen):
                    return
                if not self.local_description_set:
                    for track in self.local_tracks:
                        self.pc.addTrack(track)
                    answer_desc = await self.pc.createAnswer()
                    if self._is_stale(gen):
                        return
                    await self.pc.setLocalDescription(answer_desc)
                    if self._is_stale(gen):
                        return
                    self.local_description_set = True
                await self.signaling.publish(
                    MSG_ANSWER,
                    {"sdp": self.pc.localDescription.sdp, "type": self.pc.localDescription.type},
                    receiver=self.remote_id,
                )

            return await self._negotiate(answer, generation, "Answer")

    async def handle_answer(self, sdp: str) -> bool:
        """Host side: apply the participant's answer."""
        async with self._lock:
            if (
                self.state is not PeerState.OFFERING
                or not self.local_description_set
                or self.remote_description_set
            ):
                logger.debug(
                    f"Ignoring answer for {self.participant_id} in {self.state.value}"
                )
                return False
            generation = self._generation

            async def apply_answer(gen):
                await self._set_remote(gen, RTCSessionDescription(sdp=sdp, type="answer"))

            return await self._negotiate(apply_answer, generation, "Answer handling")

    async def add_remote_candidate(self, payload: Dict[str, Any]) -> bool:
        """Apply or buffer a remote ICE candidate.

        Returns:
            True if the candidate was applied immediately.
        """
        if self.state is PeerState.CLOSED:
            return False
        return await self.candidate_buffer.offer(payload)

    async def restart(self) -> bool:
        """Drive a FAILED session back to negotiation (reconnection only)."""
        if self.state is not PeerState.FAILED:
            logger.debug(f"Not restarting {self.participant_id} in {self.state.value}")
            return False
        if self.role == ROLE_HOST:
            return await self.start_offer()
        return await self.announce_ready()

    async def _begin_negotiation(self, target: PeerState) -> int:
        """Reset per-negotiation state and create a fresh connection."""
        old_pc = self.pc
        self._generation += 1
        generation = self._generation

        self.candidate_buffer.clear()
        self.local_description_set = False
        self.remote_description_set = False
        self._transport_connected = False
        self.tracks = []
        self.last_activity_at = time.monotonic()
        self.pc = self._create_peer_connection(generation)

        self._transition(target)
        self._start_negotiation_timer(generation)

        if old_pc is not None:
            await self._close_pc(old_pc)
        return generation

    def _start_negotiation_timer(self, generation: int) -> None:
        self._cancel_negotiation_timer()
        loop = asyncio.get_running_loop()
        self._negotiation_timer = loop.call_later(
            self.tuning.negotiation_timeout, self._on_negotiation_timeout, generation
        )

    def _cancel_negotiation_timer(self) -> None:
        if self._negotiation_timer is not None:
            self._negotiation_timer.cancel()
            self._negotiation_timer = None

    def _on_negotiation_timeout(self, generation: int) -> None:
        # A silent peer never answers and ICE never fails without a remote description
        if self._is_stale(generation) or self.state not in NEGOTIATING:
            return
        self._negotiation_timer = None
        self.mark_failed("Negotiation timed out")

    async def _send_offer(self, generation: int) -> None:
        if not self.local_description_set:
            offer = await self.pc.createOffer()
            if self._is_stale(generation):
                return
            await self.pc.setLocalDescription(offer)
            if self._is_stale(generation):
                return
            self.local_description_set = True
        await self.signaling.publish(
            MSG_OFFER,
            {"sdp": self.pc.localDescription.sdp, "type": self.pc.localDescription.type},
            receiver=self.remote_id,
        )

    async def _set_remote(self, generation: int, description: RTCSessionDescription) -> None:
        """Apply the remote description once, then flush buffered candidates."""
        if self.remote_description_set:
            return
        await self.pc.setRemoteDescription(description)
        if self._is_stale(generation):
            return
        self.remote_description_set = True
        await self.candidate_buffer.flush()

    async def _run_step(self, step, generation: int, description: str) -> None:
        """Run one negotiation step; any failure surfaces as NegotiationError."""
        try:
            await step(generation)
        except Exception as e:
            raise NegotiationError(f"{description} failed: {e}") from e

    async def _negotiate(self, step, generation: int, description: str) -> bool:
        """Run a negotiation step, retrying once before failing the session."""
        for attempt in range(1, NEGOTIATION_ATTEMPTS + 1):
            if self._is_stale(generation):
                return False
            try:
                await self._run_step(step, generation, description)
                return not self._is_stale(generation)
            except NegotiationError as e:
                if self._is_stale(generation):
                    return False
                self.last_error = str(e)
                logger.warning(
                    f"Negotiation with {self.participant_id} failed "
                    f"(attempt {attempt}/{NEGOTIATION_ATTEMPTS}): {e}"
                )

        if self.state in NEGOTIATING:
            self._transition(PeerState.FAILED)
        return False

    async def _apply_candidate(self, payload: Dict[str, Any]) -> None:
        if self.pc is None or self.state is PeerState.CLOSED:
            return
        candidate = parse_candidate(payload)
        if candidate is None:
            logger.debug(f"End of candidates from {self.participant_id}")
            return
        await self.pc.addIceCandidate(candidate)

    # ===== Connection events =====

    def _create_peer_connection(self, generation: int) -> RTCPeerConnection:
        pc = self.pc_factory()

        if self.role == ROLE_HOST:
            pc.addTransceiver("video", direction="recvonly")
            pc.addTransceiver("audio", direction="recvonly")

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if self._is_stale(generation):
                return
            self._on_connection_state(pc.connectionState)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            if self._is_stale(generation):
                return
            state = pc.iceConnectionState
            logger.info(f"ICE connection state for {self.participant_id} is now {state}")
            if state == "failed":
                self.mark_failed("ICE connection failed")

        @pc.on("track")
        def on_track(track):
            if self._is_stale(generation):
                return
            logger.info(f"Received {track.kind} track from {self.participant_id}")
            self.tracks.append(track)
            self.record_activity()
            try:
                self.listener.on_track(self, track)
            except Exception as e:
                logger.error(f"Track listener failed for {self.participant_id}: {e}")
            self._maybe_connected()

        return pc

    def _on_connection_state(self, state: str) -> None:
        logger.info(f"Connection state for {self.participant_id} is now {state}")
        if state == "connected":
            self._transport_connected = True
            self.record_activity()
            self._maybe_connected()
        elif state == "failed":
            self._transport_connected = False
            self.mark_failed("Transport failed")
        elif state in ("disconnected", "closed"):
            # Left to the liveness monitor; a disconnect may recover on its own
            self._transport_connected = False

    def _maybe_connected(self) -> None:
        if self.state not in NEGOTIATING or not self._transport_connected:
            return
        has_media = bool(self.tracks) or (
            self.role == ROLE_PARTICIPANT and bool(self.local_tracks)
        )
        if has_media:
            self.last_error = None
            self._cancel_negotiation_timer()
            self._transition(PeerState.CONNECTED)

    # ===== Liveness =====

    def record_activity(self, now: Optional[float] = None) -> None:
        """Note a heartbeat or media activity; a degraded session recovers."""
        self.last_activity_at = time.monotonic() if now is None else now
        if self.state is PeerState.DEGRADED and self._transport_connected:
            self._transition(PeerState.CONNECTED)

    def mark_degraded(self) -> bool:
        """CONNECTED -> DEGRADED after a liveness timeout."""
        if self.state is not PeerState.CONNECTED:
            return False
        self._transition(PeerState.DEGRADED)
        return True

    def mark_failed(self, reason: str) -> bool:
        """Hard failure from the transport, ICE or the liveness monitor."""
        if self.state not in NEGOTIATING and self.state not in LIVE:
            return False
        self.last_error = reason
        logger.warning(f"Peer {self.participant_id} failed: {reason}")
        self._transition(PeerState.FAILED)
        return True

    # ===== Teardown =====

    async def close(self, reason: str = "closed") -> None:
        """Tear the session down from any state.

        The state change, generation bump and buffer reset happen before the
        first await, so no other coroutine can observe a half-closed session.
        """
        if self.state is PeerState.CLOSED:
            return
        self._generation += 1
        self._cancel_negotiation_timer()
        self.candidate_buffer.clear()
        self._transport_connected = False
        self.tracks = []
        logger.info(f"Closing peer session {self.participant_id}: {reason}")
        self._transition(PeerState.CLOSED)

        pc, self.pc = self.pc, None
        if pc is not None:
            await self._close_pc(pc)

    async def _close_pc(self, pc) -> None:
        try:
            await pc.close()
        except Exception as e:
            logger.debug(f"Error closing peer connection for {self.participant_id}: {e}")

    def snapshot(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "role": self.role,
            "state": self.state.value,
            "local_description_set": self.local_description_set,
            "remote_description_set": self.remote_description_set,
            "retry_count": self.retry_count,
            "buffered_candidates": len(self.candidate_buffer),
            "tracks": len(self.tracks),
            "ice_connection_state": self.ice_connection_state,
            "last_error": self.last_error,
        }
