"""Per-participant connection state: sessions, candidates, retries and liveness."""

from hostmesh.peer.candidate_buffer import CandidateBuffer, CandidateBufferEntry
from hostmesh.peer.heartbeat import HeartbeatMonitor
from hostmesh.peer.reconnect import ReconnectionController
from hostmesh.peer.session import (
    ROLE_HOST,
    ROLE_PARTICIPANT,
    PeerSession,
    PeerSessionListener,
    PeerState,
)

__all__ = [
    "CandidateBuffer",
    "CandidateBufferEntry",
    "HeartbeatMonitor",
    "PeerSession",
    "PeerSessionListener",
    "PeerState",
    "ReconnectionController",
    "ROLE_HOST",
    "ROLE_PARTICIPANT",
]
