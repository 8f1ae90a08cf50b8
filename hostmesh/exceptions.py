"""Exception hierarchy for hostmesh.

Transport delivery and negotiation failures are recovered inside the core;
media acquisition failures, exhausted retries and invalid session ids are
surfaced to the user.
"""


class HostMeshError(Exception):
    """Base class for all hostmesh errors."""


class SignalingError(HostMeshError):
    """Raised when a signaling message could not be delivered on any channel."""

    def __init__(self, message_type: str, results: dict):
        self.message_type = message_type
        self.results = results
        super().__init__(
            f"Failed to deliver '{message_type}' on every channel: {sorted(results)}"
        )


class TransportUnavailableError(HostMeshError):
    """Raised by a single transport channel that cannot currently send."""


class MessageDecodeError(HostMeshError):
    """Raised when an inbound payload is not a valid signaling message."""


class InvalidTransitionError(HostMeshError):
    """Raised when a peer session is asked to make a transition outside its graph."""

    def __init__(self, participant_id: str, current, target):
        self.participant_id = participant_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid transition for {participant_id}: {current.value} -> {target.value}"
        )


class NegotiationError(HostMeshError):
    """Raised when offer/answer creation or description setting fails."""


class MediaAcquisitionError(HostMeshError):
    """Raised when local capture is unavailable.

    Never retried automatically: the user is asked before trying again.
    """


class RetriesExhaustedError(HostMeshError):
    """Terminal connection failure for one participant."""

    def __init__(self, participant_id: str, attempts: int):
        self.participant_id = participant_id
        self.attempts = attempts
        super().__init__(
            f"Gave up on {participant_id} after {attempts} reconnection attempts"
        )


class InvalidSessionError(HostMeshError):
    """Raised when a session id is missing, malformed or not active."""
