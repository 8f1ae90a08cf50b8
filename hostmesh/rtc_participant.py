"""Entry point for the hostmesh participant CLI."""

import asyncio
import logging
from typing import Optional

from aiortc import RTCPeerConnection

from hostmesh.config import get_config
from hostmesh.exceptions import InvalidSessionError
from hostmesh.media.capture import LocalMedia
from hostmesh.participant import ParticipantClient
from hostmesh.protocol import DEVICE_DESKTOP, generate_peer_id
from hostmesh.signaling import SignalingMultiplexer, build_transports
from hostmesh.signaling.kv_store import build_store, is_session_active


def check_session(session_id: str) -> None:
    """Refuse to join a session the durable store does not know as live.

    Without a configured store there is nothing to check against.

    Raises:
        InvalidSessionError: If the store has no live announcement.
    """
    config = get_config()
    store = build_store(config.kv_url, config.kv_dir)
    if store is None:
        return
    if not is_session_active(store, session_id):
        raise InvalidSessionError(f"Session {session_id} is not active or has expired")


async def join_session(
    session_id: str,
    media: LocalMedia,
    display_name: Optional[str] = None,
    device_class: str = DEVICE_DESKTOP,
) -> None:
    """Run the participant role until the host ends it or retries run out."""
    config = get_config()
    peer_id = generate_peer_id("participant")
    store = build_store(config.kv_url, config.kv_dir)

    signaling = SignalingMultiplexer(
        peer_id, session_id, build_transports(config, session_id, peer_id, store), config.tuning
    )
    client = ParticipantClient(
        signaling,
        media.tracks,
        display_name=display_name or "",
        device_class=device_class,
        tuning=config.tuning,
        pc_factory=lambda: RTCPeerConnection(configuration=config.get_rtc_configuration()),
    )
    client.events.on("connected", lambda: logging.info("Connected to host"))
    client.events.on("disconnected", lambda: logging.warning("Connection to host lost"))
    client.events.on(
        "connection-failed", lambda reason: logging.error(f"Giving up: {reason}")
    )

    await client.start()
    try:
        await client.ended.wait()
    finally:
        await client.stop()
        media.stop()


def run_participant(
    session_id: str,
    media: LocalMedia,
    display_name: Optional[str] = None,
    device_class: str = DEVICE_DESKTOP,
) -> None:
    """Join ``session_id`` and publish ``media`` until interrupted."""
    logging.info(f"Joining session {session_id} as {device_class} participant")
    try:
        asyncio.run(join_session(session_id, media, display_name, device_class))
    except KeyboardInterrupt:
        logging.info("Participant interrupted by user. Leaving...")
    finally:
        logging.info("Participant exiting...")
