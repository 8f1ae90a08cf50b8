"""Signaling channels and the multiplexer that aggregates them."""

from hostmesh.signaling.kv_store import (
    FileKeyValueStore,
    HttpKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
    KeyValueTransport,
)
from hostmesh.signaling.multiplexer import SignalingMultiplexer, SignalingStats
from hostmesh.signaling.relay import RelayTransport
from hostmesh.signaling.transport import Transport
from hostmesh.signaling.websocket_bus import WebSocketBusTransport


def build_transports(config, session_id: str, peer_id: str, store=None) -> list:
    """Create the configured signaling channels for one endpoint.

    Args:
        config: Loaded ``hostmesh.config.Config``.
        session_id: Session to scope every channel to.
        peer_id: Local peer id.
        store: Durable store to poll, if one is configured.

    Returns:
        List of Transport instances, pub/sub bus first.
    """
    transports = [WebSocketBusTransport(config.signaling_websocket, session_id, peer_id)]
    if store is not None:
        transports.append(
            KeyValueTransport(store, session_id, poll_interval=config.tuning.kv_poll_interval)
        )
    if config.relay_url:
        transports.append(RelayTransport(config.relay_url, session_id, peer_id))
    return transports


__all__ = [
    "FileKeyValueStore",
    "HttpKeyValueStore",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "KeyValueTransport",
    "RelayTransport",
    "SignalingMultiplexer",
    "SignalingStats",
    "Transport",
    "WebSocketBusTransport",
    "build_transports",
]
