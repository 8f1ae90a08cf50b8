"""Signaling transport multiplexer.

Broadcasts every outbound signaling message on all available channels in
parallel and funnels every inbound delivery through a single filter that
drops foreign, stale and duplicate messages before handing them to
subscribers.
"""

import asyncio
import inspect
import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from hostmesh.config import ConnectionTuning
from hostmesh.exceptions import SignalingError
from hostmesh.protocol import SignalingMessage, now_ms
from hostmesh.signaling.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class SignalingStats:
    """Shared signaling counters used for diagnostics.

    Attributes:
        sent: Messages accepted by at least one channel.
        received: Unique inbound messages passed to subscribers.
        failed: Channel-level send failures.
        duplicates: Inbound deliveries dropped as duplicates.
        stale: Inbound deliveries dropped for age.
        sent_by_type: Sent counts per message type.
        received_by_type: Received counts per message type.
        received_by_channel: First-delivery counts per channel.
    """

    sent: int = 0
    received: int = 0
    failed: int = 0
    duplicates: int = 0
    stale: int = 0
    sent_by_type: Counter = field(default_factory=Counter)
    received_by_type: Counter = field(default_factory=Counter)
    received_by_channel: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict:
        return {
            "sent": self.sent,
            "received": self.received,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "stale": self.stale,
            "sent_by_type": dict(self.sent_by_type),
            "received_by_type": dict(self.received_by_type),
            "received_by_channel": dict(self.received_by_channel),
        }


class DedupFilter:
    """Remembers recently seen dedup keys for the staleness window."""

    def __init__(self, bucket: float, window: float):
        self.bucket = bucket
        self.window_ms = int(window * 1000)
        self._seen: "OrderedDict[tuple, int]" = OrderedDict()

    def seen(self, message: SignalingMessage, now: Optional[int] = None) -> bool:
        """Record ``message``; True if an equivalent one was already seen."""
        now = now_ms() if now is None else now
        self._expire(now)

        key = message.dedup_key(self.bucket)
        if key in self._seen:
            return True
        self._seen[key] = now
        return False

    def _expire(self, now: int) -> None:
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at <= self.window_ms:
                break
            self._seen.popitem(last=False)

    def __len__(self) -> int:
        return len(self._seen)


MessageHandler = Callable[[SignalingMessage], Any]


class SignalingMultiplexer:
    """Fans signaling out over several channels and de-duplicates the way back.

    Attributes:
        local_id: Peer id of this endpoint; messages for other receivers are dropped.
        session_id: Session every message is scoped to.
        transports: The channels, in priority order (used only for logging).
        stats: Shared counters.
    """

    def __init__(
        self,
        local_id: str,
        session_id: str,
        transports: List[Transport],
        tuning: Optional[ConnectionTuning] = None,
    ):
        self.local_id = local_id
        self.session_id = session_id
        self.transports = list(transports)
        self.tuning = tuning or ConnectionTuning()
        self.stats = SignalingStats()

        self._dedup = DedupFilter(self.tuning.dedup_bucket, self.tuning.staleness_window)
        self._handlers: List[MessageHandler] = []
        self._storm_warned = False

    def subscribe(self, handler: MessageHandler) -> None:
        """Register a handler for unique inbound messages (sync or async)."""
        self._handlers.append(handler)

    async def start(self) -> None:
        """Start every channel; a channel failing to start is skipped."""
        for transport in self.transports:
            try:
                await transport.start(self._on_transport_message)
                logger.info(f"Signaling channel '{transport.name}' started")
            except Exception as e:
                logger.warning(f"Signaling channel '{transport.name}' unavailable: {e}")

    async def stop(self) -> None:
        for transport in self.transports:
            try:
                await transport.stop()
            except Exception as e:
                logger.debug(f"Error stopping channel '{transport.name}': {e}")

    async def send(self, message: SignalingMessage) -> Dict[str, bool]:
        """Broadcast ``message`` on every available channel in parallel.

        Returns:
            Mapping of channel name to whether it accepted the message.

        Raises:
            SignalingError: If no channel accepted the message.
        """
        results = await asyncio.gather(
            *(self._send_on(transport, message) for transport in self.transports)
        )
        flags = {t.name: ok for t, ok in zip(self.transports, results)}

        if any(flags.values()):
            self.stats.sent += 1
            self.stats.sent_by_type[message.type] += 1
        self._check_storm()

        if not any(flags.values()):
            raise SignalingError(message.type, flags)
        return flags

    async def publish(
        self, msg_type: str, payload: Any = None, receiver: Optional[str] = None
    ) -> Dict[str, bool]:
        """Build a message from this endpoint and send it."""
        message = SignalingMessage(
            type=msg_type,
            sender=self.local_id,
            session_id=self.session_id,
            payload=payload,
            receiver=receiver,
        )
        return await self.send(message)

    async def _send_on(self, transport: Transport, message: SignalingMessage) -> bool:
        if not transport.available:
            return False
        try:
            await transport.send(message)
            return True
        except Exception as e:
            self.stats.failed += 1
            logger.debug(f"Send of '{message.type}' on '{transport.name}' failed: {e}")
            return False

    def _check_storm(self) -> None:
        """Warn once when many messages went out and nothing ever came back."""
        if (
            not self._storm_warned
            and self.stats.sent > self.tuning.storm_threshold
            and self.stats.received == 0
        ):
            self._storm_warned = True
            logger.warning(
                f"Signaling storm: {self.stats.sent} messages sent, 0 received "
                f"(by type: {dict(self.stats.sent_by_type)}). "
                f"Channels may be misrouted or peers may be on another session."
            )

    def accept(self, message: SignalingMessage, now: Optional[int] = None) -> bool:
        """Run the inbound filter; True if the message should be processed."""
        if message.session_id != self.session_id:
            return False
        if message.sender == self.local_id:
            return False
        if not message.is_addressed_to(self.local_id):
            return False
        if message.is_stale(self.tuning.staleness_window, now):
            self.stats.stale += 1
            return False
        if self._dedup.seen(message, now):
            self.stats.duplicates += 1
            return False
        return True

    async def _on_transport_message(self, message: SignalingMessage, channel: str) -> None:
        if not self.accept(message):
            return

        self.stats.received += 1
        self.stats.received_by_type[message.type] += 1
        self.stats.received_by_channel[channel] += 1
        logger.debug(f"Received '{message.type}' from {message.sender} via {channel}")

        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error handling '{message.type}' from {message.sender}: {e}")

    def channel_status(self) -> Dict[str, bool]:
        return {t.name: t.available for t in self.transports}
