"""Hosted realtime relay signaling channel.

Speaks the Phoenix channel protocol used by hosted realtime services
(e.g. Supabase Realtime): join a topic derived from the session id, send
signaling messages as ``broadcast`` events, and keep the socket alive with
periodic ``phoenix`` heartbeats.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Optional
from urllib.parse import urlencode

from hostmesh.protocol import SignalingMessage
from hostmesh.signaling.websocket_bus import WebSocketBusTransport

logger = logging.getLogger(__name__)

BROADCAST_EVENT = "signal"
RELAY_HEARTBEAT_INTERVAL = 25.0  # seconds


class RelayTransport(WebSocketBusTransport):
    """Optional third channel through a hosted realtime relay.

    Attributes:
        api_key: Key appended to the socket URL when the relay requires one.
        topic: Channel topic for this session.
    """

    name = "relay"

    def __init__(
        self,
        url: str,
        session_id: str,
        peer_id: str,
        api_key: Optional[str] = None,
        heartbeat_interval: float = RELAY_HEARTBEAT_INTERVAL,
    ):
        if api_key:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{urlencode({'apikey': api_key, 'vsn': '1.0.0'})}"
        super().__init__(url, session_id, peer_id)
        self.api_key = api_key
        self.topic = f"realtime:hostmesh-{session_id}"
        self.heartbeat_interval = heartbeat_interval
        self._refs = itertools.count(1)
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def _on_connected(self, websocket) -> None:
        await websocket.send(
            json.dumps(
                {
                    "topic": self.topic,
                    "event": "phx_join",
                    "payload": {"config": {"broadcast": {"self": False, "ack": False}}},
                    "ref": str(next(self._refs)),
                }
            )
        )
        # One heartbeat loop per socket
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(websocket))

    async def _heartbeat_loop(self, websocket) -> None:
        """Keep the relay socket open."""
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                await websocket.send(
                    json.dumps(
                        {
                            "topic": "phoenix",
                            "event": "heartbeat",
                            "payload": {},
                            "ref": str(next(self._refs)),
                        }
                    )
                )
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[{self.name}] Heartbeat loop ended: {e}")

    def _extract_message(self, data: dict) -> Optional[Any]:
        event = data.get("event")
        if event == "broadcast" and data.get("topic") == self.topic:
            payload = data.get("payload") or {}
            if payload.get("event") == BROADCAST_EVENT:
                return payload.get("payload")
        elif event == "phx_reply":
            status = (data.get("payload") or {}).get("status")
            if status != "ok":
                logger.warning(f"[{self.name}] Relay replied with status {status}")
        elif event in ("phx_error", "phx_close"):
            logger.warning(f"[{self.name}] Relay channel {event} on {data.get('topic')}")
        return None

    def _encode_publish(self, message: SignalingMessage) -> str:
        return json.dumps(
            {
                "topic": self.topic,
                "event": "broadcast",
                "payload": {
                    "type": "broadcast",
                    "event": BROADCAST_EVENT,
                    "payload": message.to_dict(),
                },
                "ref": str(next(self._refs)),
            }
        )

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        await super().stop()
