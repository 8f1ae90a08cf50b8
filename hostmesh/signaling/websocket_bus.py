"""Low-latency pub/sub signaling channel over WebSockets.

Connects to the hostmesh signaling server (see ``hostmesh.signaling.server``),
joins the session room and publishes/receives signaling messages. The
connection is re-established in the background whenever it drops.

Wire frames (client → server):
    {"type": "join", "sessionId": ..., "peerId": ...}
    {"type": "publish", "sessionId": ..., "message": {...}}
    {"type": "ping"}

Wire frames (server → client):
    {"type": "joined", "sessionId": ..., "peers": [...]}
    {"type": "message", "message": {...}}
    {"type": "pong", "timestamp": ...}
    {"type": "error", "reason": ...}
"""

import asyncio
import json
import logging
from typing import Any, Optional

import websockets

from hostmesh.exceptions import TransportUnavailableError
from hostmesh.protocol import SignalingMessage
from hostmesh.signaling.transport import Transport

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 2.0  # seconds


class WebSocketBusTransport(Transport):
    """Session-scoped pub/sub bus channel.

    Attributes:
        url: WebSocket URL of the signaling server.
        session_id: Session room to join.
        peer_id: Local peer id announced on join.
        reconnect_delay: Seconds to wait before reconnecting after a drop.
    """

    name = "websocket"

    def __init__(
        self,
        url: str,
        session_id: str,
        peer_id: str,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        super().__init__()
        self.url = url
        self.session_id = session_id
        self.peer_id = peer_id
        self.reconnect_delay = reconnect_delay

        self.websocket = None
        self._connected = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._stopping = False

    async def _start(self) -> None:
        self._stopping = False
        self._runner = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float) -> bool:
        """Wait until the channel is connected; False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self) -> None:
        """Connect, receive until the socket drops, then reconnect."""
        while not self._stopping:
            try:
                async with websockets.connect(self.url) as websocket:
                    self.websocket = websocket
                    await self._on_connected(websocket)
                    self.available = True
                    self._connected.set()
                    logger.info(f"[{self.name}] Connected to {self.url}")

                    async for raw in websocket:
                        await self._handle_frame(raw)

            except asyncio.CancelledError:
                break
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"[{self.name}] Connection to {self.url} failed: {e}")
            finally:
                self.available = False
                self.websocket = None
                self._connected.clear()

            if not self._stopping:
                await asyncio.sleep(self.reconnect_delay)

    async def _on_connected(self, websocket) -> None:
        """Join the session room."""
        await websocket.send(
            json.dumps(
                {"type": "join", "sessionId": self.session_id, "peerId": self.peer_id}
            )
        )

    async def _handle_frame(self, raw) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"[{self.name}] Invalid JSON received")
            return

        message = self._extract_message(data)
        if message is not None:
            await self._dispatch_raw(message)

    def _extract_message(self, data: dict) -> Optional[Any]:
        """Return the signaling message carried by a server frame, if any."""
        frame_type = data.get("type")
        if frame_type == "message":
            return data.get("message")
        if frame_type == "joined":
            logger.info(
                f"[{self.name}] Joined session {data.get('sessionId')} "
                f"({len(data.get('peers', []))} other peers)"
            )
        elif frame_type == "error":
            logger.error(f"[{self.name}] Server error: {data.get('reason')}")
        else:
            logger.debug(f"[{self.name}] Ignoring frame type: {frame_type}")
        return None

    def _encode_publish(self, message: SignalingMessage) -> str:
        return json.dumps(
            {
                "type": "publish",
                "sessionId": self.session_id,
                "message": message.to_dict(),
            }
        )

    async def send(self, message: SignalingMessage) -> None:
        if not self.available or self.websocket is None:
            raise TransportUnavailableError(f"{self.name} channel is not connected")
        await self.websocket.send(self._encode_publish(message))

    async def stop(self) -> None:
        self._stopping = True
        if self.websocket is not None:
            await self.websocket.close()
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self.available = False
