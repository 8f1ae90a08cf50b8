"""WebSocket pub/sub server for session-scoped signaling.

Peers join a session room and publish signaling messages; the server fans
each published message out to every other member of the same session. It
holds no authoritative membership: rooms exist only while sockets are open.

Usage:
    hostmesh signaling-server [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
import time
from typing import Dict, Optional, Set

import websockets

logger = logging.getLogger(__name__)

METRICS_INTERVAL = 60.0  # seconds


class SignalingRooms:
    """Room membership for the pub/sub server.

    Attributes:
        rooms: session_id -> set of peer ids.
        peers: (session_id, peer_id) -> websocket.
    """

    def __init__(self):
        self.rooms: Dict[str, Set[str]] = {}
        self.peers: Dict[tuple, object] = {}

    def join(self, session_id: str, peer_id: str, websocket) -> Optional[object]:
        """Add a peer to a room; returns the socket it replaced, if any."""
        previous = self.peers.get((session_id, peer_id))
        self.rooms.setdefault(session_id, set()).add(peer_id)
        self.peers[(session_id, peer_id)] = websocket
        return previous if previous is not websocket else None

    def leave(self, session_id: str, peer_id: str, websocket) -> None:
        """Remove a peer if ``websocket`` is still its registered socket."""
        if self.peers.get((session_id, peer_id)) is not websocket:
            return
        del self.peers[(session_id, peer_id)]
        members = self.rooms.get(session_id)
        if members is not None:
            members.discard(peer_id)
            if not members:
                del self.rooms[session_id]
                logger.info(f"Removed empty session room {session_id}")

    def others(self, session_id: str, peer_id: str) -> list:
        """Sockets of every other member of the room."""
        return [
            self.peers[(session_id, other)]
            for other in self.rooms.get(session_id, set())
            if other != peer_id and (session_id, other) in self.peers
        ]

    def members(self, session_id: str) -> list:
        return sorted(self.rooms.get(session_id, set()))


class SignalingServer:
    """Session-scoped signaling bus."""

    def __init__(self, host: str = "localhost", port: int = 8080):
        self.host = host
        self.port = port
        self.state = SignalingRooms()
        self.forwarded = 0

    async def handler(self, websocket):
        """Handle one WebSocket connection."""
        session_id = None
        peer_id = None

        try:
            async for raw in websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({"type": "error", "reason": "invalid_json"}))
                    continue

                msg_type = data.get("type")

                if msg_type == "join":
                    new_session = data.get("sessionId")
                    new_peer = data.get("peerId")
                    if not new_session or not new_peer:
                        await websocket.send(
                            json.dumps(
                                {"type": "error", "reason": "sessionId and peerId are required"}
                            )
                        )
                        continue

                    if session_id and peer_id:
                        self.state.leave(session_id, peer_id, websocket)
                    session_id, peer_id = new_session, new_peer

                    replaced = self.state.join(session_id, peer_id, websocket)
                    if replaced is not None:
                        logger.info(f"Peer {peer_id} re-joined {session_id}, closing old socket")
                        asyncio.create_task(replaced.close())

                    members = self.state.members(session_id)
                    await websocket.send(
                        json.dumps(
                            {
                                "type": "joined",
                                "sessionId": session_id,
                                "peers": [p for p in members if p != peer_id],
                            }
                        )
                    )
                    logger.info(
                        f"Peer {peer_id} joined session {session_id} ({len(members)} total)"
                    )

                elif msg_type == "publish":
                    if session_id is None:
                        await websocket.send(json.dumps({"type": "error", "reason": "not_joined"}))
                        continue
                    if data.get("sessionId") not in (None, session_id):
                        await websocket.send(json.dumps({"type": "error", "reason": "wrong_session"}))
                        continue

                    frame = json.dumps({"type": "message", "message": data.get("message")})
                    for other in self.state.others(session_id, peer_id):
                        try:
                            await other.send(frame)
                            self.forwarded += 1
                        except websockets.exceptions.ConnectionClosed:
                            logger.debug("Skipping closed member socket")

                elif msg_type == "ping":
                    await websocket.send(
                        json.dumps({"type": "pong", "timestamp": int(time.time() * 1000)})
                    )

                else:
                    logger.debug(f"Ignoring frame type: {msg_type}")

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            if session_id and peer_id:
                self.state.leave(session_id, peer_id, websocket)
                logger.info(f"Removed peer {peer_id} from {session_id}")

    async def _metrics_loop(self):
        while True:
            await asyncio.sleep(METRICS_INTERVAL)
            logger.info(
                f"Server metrics: {len(self.state.peers)} connections, "
                f"{len(self.state.rooms)} active sessions, {self.forwarded} messages forwarded"
            )

    async def serve(self):
        """Run the server until cancelled."""
        metrics = asyncio.create_task(self._metrics_loop())
        try:
            async with websockets.serve(self.handler, self.host, self.port):
                logger.info(f"Signaling server running on ws://{self.host}:{self.port}")
                await asyncio.Future()  # Run forever
        finally:
            metrics.cancel()


def run_signaling_server(host: str = "localhost", port: int = 8080):
    """Blocking entry point for the CLI."""
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(SignalingServer(host, port).serve())
    except KeyboardInterrupt:
        logging.info("Server stopped")
