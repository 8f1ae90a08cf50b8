"""Entry point for the hostmesh host CLI."""

import asyncio
import json
import logging

from aiortc import RTCPeerConnection

from hostmesh.config import get_config
from hostmesh.directory import (
    EVENT_CONNECTION_DEGRADED,
    EVENT_CONNECTION_FAILED,
    EVENT_PARTICIPANT_JOINED,
    EVENT_PARTICIPANT_LEFT,
    EVENT_STREAM_ATTACHED,
    SessionDirectory,
)
from hostmesh.host import HostController
from hostmesh.media.watchdog import EVENT_VIDEO_LOST, EVENT_VIDEO_RESTORED, TrackSink
from hostmesh.protocol import generate_peer_id, validate_session_id
from hostmesh.signaling import SignalingMultiplexer, build_transports
from hostmesh.signaling.kv_store import build_store, end_session, keep_session_announced

DIAGNOSTICS_INTERVAL = 60.0  # seconds


def _start_track_sink(participant_id: str, track) -> TrackSink:
    sink = TrackSink(participant_id, track)
    sink.start()
    return sink


def _log_events(directory: SessionDirectory) -> None:
    for event in (
        EVENT_PARTICIPANT_JOINED,
        EVENT_PARTICIPANT_LEFT,
        EVENT_CONNECTION_DEGRADED,
        EVENT_VIDEO_LOST,
        EVENT_VIDEO_RESTORED,
    ):
        directory.on(event, lambda participant_id, event=event: logging.info(f"{event}: {participant_id}"))
    directory.on(
        EVENT_STREAM_ATTACHED,
        lambda participant_id, track: logging.info(f"Stream attached: {participant_id} ({track.kind})"),
    )
    directory.on(
        EVENT_CONNECTION_FAILED,
        lambda participant_id, reason: logging.error(f"Connection to {participant_id} failed: {reason}"),
    )


async def _diagnostics_loop(directory: SessionDirectory, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        logging.info(f"Diagnostics: {json.dumps(directory.diagnostics(), default=str)}")


async def host_session(session_id: str, participants: int) -> None:
    """Run the host role until cancelled."""
    config = get_config()
    peer_id = generate_peer_id("host")
    store = build_store(config.kv_url, config.kv_dir)

    signaling = SignalingMultiplexer(
        peer_id, session_id, build_transports(config, session_id, peer_id, store), config.tuning
    )
    directory = SessionDirectory(
        session_id,
        participants,
        signaling,
        tuning=config.tuning,
        pc_factory=lambda: RTCPeerConnection(configuration=config.get_rtc_configuration()),
        sink_factory=_start_track_sink,
    )
    _log_events(directory)
    host = HostController(directory, signaling)

    background = [asyncio.create_task(_diagnostics_loop(directory, DIAGNOSTICS_INTERVAL))]
    if store is not None:
        announcer = keep_session_announced(
            store, session_id, peer_id, window=config.tuning.staleness_window
        )
        background.append(asyncio.create_task(announcer))

    await host.start()
    try:
        await asyncio.Future()  # Run until cancelled
    finally:
        for task in background:
            task.cancel()
        await host.stop()
        if store is not None:
            await asyncio.to_thread(end_session, store, session_id)


def run_host(session_id: str, participants: int) -> None:
    """Validate the session id and run the host.

    Raises:
        InvalidSessionError: If ``session_id`` is missing or malformed.
    """
    session_id = validate_session_id(session_id)
    logging.info(f"Hosting session {session_id} with {participants} slots")
    try:
        asyncio.run(host_session(session_id, participants))
    except KeyboardInterrupt:
        logging.info("Host interrupted by user. Shutting down...")
    finally:
        logging.info("Host exiting...")
