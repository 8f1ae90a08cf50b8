"""Host role: turns inbound signaling into directory and session operations."""

import asyncio
import logging
from typing import Optional, Set

from hostmesh.directory import SessionDirectory
from hostmesh.exceptions import SignalingError
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

logger = logging.getLogger(__name__)


class HostController:
    """Host-side signaling handler.

    Each inbound message is handled in its own task; per-session ordering is
    kept by the PeerSession lock.

    Attributes:
        directory: The session directory all state lives in.
        signaling: Multiplexer the host listens on.
    """

    def __init__(self, directory: SessionDirectory, signaling):
        self.directory = directory
        self.signaling = signaling
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        self.signaling.subscribe(self.handle_message)
        await self.signaling.start()
        self.directory.start()
        logger.info(f"Host {self.signaling.local_id} listening on session {self.directory.session_id}")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        try:
            await self.signaling.publish(MSG_LEAVE, {"reason": "host ended the session"})
        except SignalingError as e:
            logger.debug(f"Leave not delivered: {e}")
        await self.directory.stop()
        await self.signaling.stop()

    def handle_message(self, message: SignalingMessage) -> None:
        task = asyncio.create_task(self.process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process(self, message: SignalingMessage) -> None:
        """Handle one de-duplicated signaling message."""
        participant_id = message.sender
        payload = message.payload or {}

        if message.type == MSG_READY:
            await self.on_ready(participant_id, payload)
            return

        if message.type == MSG_LEAVE:
            await self.directory.handle_leave(participant_id)
            return

        session = self.directory.get_session(participant_id)
        if session is None:
            logger.debug(f"No session for '{message.type}' from {participant_id}")
            return
        self.directory.record_activity(participant_id)

        if message.type == MSG_ANSWER:
            await session.handle_answer(payload.get("sdp", ""))
        elif message.type == MSG_ICE_CANDIDATE:
            await session.add_remote_candidate(payload)
        elif message.type == MSG_HEARTBEAT:
            pass
        elif message.type == MSG_OFFER:
            logger.warning(f"Ignoring offer from participant {participant_id}")

    async def on_ready(self, participant_id: str, payload: dict) -> Optional[bool]:
        """A participant is ready to connect.

        - same ``readyId`` as the current negotiation: the participant is still
          waiting, so the pending offer is repeated
        - new ``readyId``: the participant (re)started, any old session is
          replaced and a fresh offer is sent
        - no free slot: the participant waits; its repeated ``ready`` is
          answered once a slot frees up
        """
        ready_id = payload.get("readyId")
        session = self.directory.get_session(participant_id)

        if session is not None and ready_id is not None and session.ready_id == ready_id:
            if session.state is PeerState.OFFERING:
                return await session.resend_offer()
            return None

        slot = self.directory.register_participant(
            participant_id,
            display_name=payload.get("displayName"),
            device_class=payload.get("deviceClass"),
        )
        if slot is None:
            return None

        session = await self.directory.create_session(participant_id)
        session.ready_id = ready_id
        return await session.start_offer()
