"""Transport channel interface for the signaling multiplexer.

Each channel delivers signaling messages independently of the others. A
channel that cannot connect simply reports itself unavailable; it never
blocks the remaining channels.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from hostmesh.exceptions import MessageDecodeError
from hostmesh.protocol import SignalingMessage, decode_message

logger = logging.getLogger(__name__)

# Callback invoked by a channel for every decoded inbound message.
MessageCallback = Callable[[SignalingMessage, str], Awaitable[None]]


class Transport(ABC):
    """One signaling channel.

    Attributes:
        name: Channel name used in logs and per-channel send results.
        available: Whether the channel can currently send.
    """

    name = "transport"

    def __init__(self):
        self.available = False
        self._on_message: Optional[MessageCallback] = None

    async def start(self, on_message: MessageCallback) -> None:
        """Begin receiving; inbound messages are passed to ``on_message``."""
        self._on_message = on_message
        await self._start()

    @abstractmethod
    async def _start(self) -> None:
        """Channel-specific startup."""

    @abstractmethod
    async def send(self, message: SignalingMessage) -> None:
        """Send one message.

        Raises:
            TransportUnavailableError: If the channel cannot send right now.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop receiving and release resources."""

    async def _dispatch_raw(self, raw) -> None:
        """Decode a raw inbound payload and hand it to the multiplexer."""
        try:
            message = decode_message(raw)
        except MessageDecodeError as e:
            logger.warning(f"[{self.name}] Dropping undecodable message: {e}")
            return
        if self._on_message is not None:
            await self._on_message(message, self.name)
