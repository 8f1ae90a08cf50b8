"""Signaling message protocol for hostmesh.

This module defines the signaling messages exchanged between the host and
its participants, the session identifiers that scope them, and the join URL
handed to participants.

Message Protocol Overview
-------------------------

Every signaling message is a JSON object::

    {
        "type": "offer" | "answer" | "ice-candidate" | "leave" | "ready" | "heartbeat",
        "sender": "<peer id>",
        "receiver": "<peer id>",      # optional, omitted for broadcasts
        "sessionId": "<session id>",
        "payload": {...},
        "timestamp": 1718000000000     # milliseconds since the epoch
    }

The same message may be delivered more than once (it is broadcast on every
signaling channel). Receivers drop:

- messages for another session,
- messages whose ``receiver`` is set and is not their own id,
- messages they sent themselves (pub/sub echo),
- messages older than the staleness window (30 s by default),
- duplicates sharing ``(type, sender, receiver, timestamp bucket, payload)``.

Message Types
-------------

**ready**
    Sent by: Participant
    Purpose: Participant has local media and wants the host to connect
    Payload: ``{"displayName": str, "deviceClass": "mobile" | "desktop", "readyId": str}``
    Repeated every few seconds (same ``readyId``) until an offer arrives;
    a new ``readyId`` marks a new connection attempt.

**offer**
    Sent by: Host
    Payload: ``{"sdp": str, "type": "offer"}``

**answer**
    Sent by: Participant
    Payload: ``{"sdp": str, "type": "answer"}``

**ice-candidate**
    Sent by: Either peer (trickle ICE)
    Payload: ``{"candidate": "candidate:...", "sdpMid": str, "sdpMLineIndex": int}``

**heartbeat**
    Sent by: Either peer
    Payload: ``{"state": str}``

**leave**
    Sent by: Either peer on shutdown
    Payload: ``{"reason": str}``

Message Flow Example
--------------------

1. Participant → *: ready
2. Host → Participant: offer
3. Participant → Host: answer
4. Either → Either: ice-candidate (may arrive before the answer is applied)
5. Either → Either: heartbeat (every 5 s mobile, 30 s otherwise)
6. Either → Either: leave
"""

import hashlib
import json
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from hostmesh.exceptions import InvalidSessionError, MessageDecodeError

# Signaling message types
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"
MSG_LEAVE = "leave"
MSG_READY = "ready"
MSG_HEARTBEAT = "heartbeat"

MESSAGE_TYPES = frozenset(
    {MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE, MSG_LEAVE, MSG_READY, MSG_HEARTBEAT}
)

# Device classes
DEVICE_MOBILE = "mobile"
DEVICE_DESKTOP = "desktop"
DEVICE_CLASSES = frozenset({DEVICE_MOBILE, DEVICE_DESKTOP})

# Camera facing hints for the join URL
CAMERA_FACINGS = frozenset({"environment", "user"})

# Session ids are short lowercase alphanumerics
SESSION_ID_ALPHABET = string.ascii_lowercase + string.digits
SESSION_ID_LENGTH = 13
SESSION_ID_PATTERN = re.compile(r"^[a-z0-9]{6,64}$")

PARTICIPANT_PATH = "participant"


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class SignalingMessage:
    """One signaling message.

    Attributes:
        type: One of MESSAGE_TYPES.
        sender: Peer id of the sender.
        session_id: Session the message is scoped to.
        payload: Type-specific body.
        receiver: Target peer id, or None for a broadcast.
        timestamp: Send time in milliseconds since the epoch.
    """

    type: str
    sender: str
    session_id: str
    payload: Any = None
    receiver: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        if self.type not in MESSAGE_TYPES:
            raise MessageDecodeError(f"Unknown message type: {self.type!r}")
        if not self.sender:
            raise MessageDecodeError("Message sender cannot be empty")
        if not self.session_id:
            raise MessageDecodeError("Message sessionId cannot be empty")

    def to_dict(self) -> dict:
        data = {
            "type": self.type,
            "sender": self.sender,
            "sessionId": self.session_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }
        if self.receiver is not None:
            data["receiver"] = self.receiver
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SignalingMessage":
        """Build a message from its wire dictionary.

        Raises:
            MessageDecodeError: If required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise MessageDecodeError(f"Expected a JSON object, got {type(data).__name__}")
        try:
            timestamp = int(data["timestamp"])
            return cls(
                type=data["type"],
                sender=data["sender"],
                session_id=data["sessionId"],
                payload=data.get("payload"),
                receiver=data.get("receiver"),
                timestamp=timestamp,
            )
        except KeyError as e:
            raise MessageDecodeError(f"Missing field {e.args[0]!r}") from e
        except (TypeError, ValueError) as e:
            raise MessageDecodeError(f"Malformed message: {e}") from e

    def is_stale(self, window: float, now: Optional[int] = None) -> bool:
        """True if the message is older than ``window`` seconds."""
        now = now_ms() if now is None else now
        return now - self.timestamp > window * 1000

    def is_addressed_to(self, peer_id: str) -> bool:
        """True if the message is a broadcast or targets ``peer_id``."""
        return self.receiver is None or self.receiver == peer_id

    def dedup_key(self, bucket: float) -> tuple:
        """Key under which cross-channel duplicates collapse.

        Distinct payloads (e.g. two ICE candidates sent in the same bucket)
        never share a key.
        """
        bucket_ms = max(int(bucket * 1000), 1)
        digest = hashlib.sha1(
            json.dumps(self.payload, sort_keys=True, default=str).encode()
        ).hexdigest()
        return (
            self.type,
            self.sender,
            self.receiver,
            self.timestamp // bucket_ms,
            digest,
        )


def encode_message(message: SignalingMessage) -> str:
    """Serialize a message to its JSON wire form.

    Examples:
        >>> m = SignalingMessage("leave", "p1", "abc123", {"reason": "bye"}, timestamp=1)
        >>> encode_message(m)
        '{"type": "leave", "sender": "p1", "sessionId": "abc123", "payload": {"reason": "bye"}, "timestamp": 1}'
    """
    return json.dumps(message.to_dict())


def decode_message(raw) -> SignalingMessage:
    """Parse a JSON string, bytes or dict into a SignalingMessage.

    Raises:
        MessageDecodeError: If the input is not a valid message.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MessageDecodeError(f"Invalid JSON: {e}") from e
    return SignalingMessage.from_dict(raw)


# =============================================================================
# Sessions and join URLs
# =============================================================================


def generate_session_id() -> str:
    """Generate a new random session id."""
    return "".join(
        secrets.choice(SESSION_ID_ALPHABET) for _ in range(SESSION_ID_LENGTH)
    )


def generate_peer_id(role: str) -> str:
    """Generate a peer id such as ``participant-3f9c2a1b``."""
    return f"{role}-{secrets.token_hex(4)}"


def validate_session_id(session_id: Optional[str]) -> str:
    """Return the normalized session id or raise InvalidSessionError."""
    if not session_id:
        raise InvalidSessionError("Session id is missing")
    session_id = session_id.strip().lower()
    if not SESSION_ID_PATTERN.match(session_id):
        raise InvalidSessionError(f"Invalid session id: {session_id!r}")
    return session_id


def build_join_url(
    origin: str,
    session_id: str,
    force_mobile: bool = False,
    camera: Optional[str] = None,
) -> str:
    """Build the URL a participant opens to join a session.

    The query parameters are advisory hints for the media acquisition layer.

    Examples:
        >>> build_join_url("https://live.example", "abc123")
        'https://live.example/participant/abc123'
        >>> build_join_url("https://live.example/", "abc123", force_mobile=True, camera="user")
        'https://live.example/participant/abc123?forceMobile=true&camera=user'
    """
    session_id = validate_session_id(session_id)
    if camera is not None and camera not in CAMERA_FACINGS:
        raise ValueError(f"camera must be one of {sorted(CAMERA_FACINGS)}")

    url = f"{origin.rstrip('/')}/{PARTICIPANT_PATH}/{session_id}"
    params = {}
    if force_mobile:
        params["forceMobile"] = "true"
    if camera:
        params["camera"] = camera
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


@dataclass
class JoinTarget:
    """What a participant extracts from a join URL or bare session id."""

    session_id: str
    force_mobile: bool = False
    camera: Optional[str] = None


def parse_join_url(value: str) -> JoinTarget:
    """Parse a join URL (or a bare session id) into a JoinTarget.

    Raises:
        InvalidSessionError: If no valid session id can be found.
    """
    if not value:
        raise InvalidSessionError("Session id is missing")
    if "/" not in value:
        return JoinTarget(session_id=validate_session_id(value))

    parts = urlsplit(value)
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2 or segments[-2] != PARTICIPANT_PATH:
        raise InvalidSessionError(f"Not a participant join URL: {value}")

    query = parse_qs(parts.query)
    camera = query.get("camera", [None])[0]
    if camera not in CAMERA_FACINGS:
        camera = None
    return JoinTarget(
        session_id=validate_session_id(segments[-1]),
        force_mobile=query.get("forceMobile", ["false"])[0].lower() == "true",
        camera=camera,
    )
