"""Local media capability probe and acquisition for participants."""

import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional

from aiortc import RTCRtpSender
from aiortc.contrib.media import MediaPlayer

from hostmesh.exceptions import MediaAcquisitionError

logger = logging.getLogger(__name__)

# Platform capture devices understood by ffmpeg/PyAV
DEVICE_FORMATS = {
    "linux": "v4l2",
    "darwin": "avfoundation",
    "win32": "dshow",
}


@dataclass
class Capabilities:
    """What this endpoint can do before negotiation is attempted.

    Attributes:
        rtc_available: A peer connection can be created.
        capture_available: The configured media source looks usable.
        reason: Why something is unavailable, if it is.
    """

    rtc_available: bool
    capture_available: bool
    reason: Optional[str] = None

    @property
    def can_negotiate(self) -> bool:
        return self.rtc_available and self.capture_available


def _is_stream_url(source: str) -> bool:
    return "://" in source


def probe_capabilities(source: Optional[str]) -> Capabilities:
    """Check whether negotiation should be attempted with ``source``."""
    codecs = RTCRtpSender.getCapabilities("video").codecs
    rtc_available = bool(codecs)
    reason = None if rtc_available else "No video codecs available for WebRTC"

    if not source:
        return Capabilities(rtc_available, False, reason or "No media source configured")

    capture_available = _is_stream_url(source) or os.path.exists(source) or ":" in source
    if not capture_available:
        reason = reason or f"Media source not found: {source}"
    return Capabilities(rtc_available, capture_available, reason)


def default_device_format(platform: Optional[str] = None) -> Optional[str]:
    return DEVICE_FORMATS.get(platform or sys.platform)


class LocalMedia:
    """Captured local tracks, kept open for the lifetime of the participant.

    Attributes:
        player: Underlying aiortc MediaPlayer.
        source: What was opened.
    """

    def __init__(self, player: MediaPlayer, source: str):
        self.player = player
        self.source = source

    @property
    def tracks(self) -> List:
        return [t for t in (self.player.video, self.player.audio) if t is not None]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


def acquire_media(
    source: str,
    camera: Optional[str] = None,
    device_format: Optional[str] = None,
    options: Optional[dict] = None,
) -> LocalMedia:
    """Open a camera device, file or stream URL.

    Failures are surfaced immediately and never retried automatically.

    Args:
        source: Device path (``/dev/video0``), file or URL.
        camera: Facing hint (``user`` or ``environment``); logged only, the
            device path decides which camera is opened.
        device_format: ffmpeg input format; defaults to the platform capture
            format for device paths.
        options: ffmpeg input options, e.g. ``{"video_size": "640x480"}``.

    Raises:
        MediaAcquisitionError: If the source cannot be opened or has no tracks.
    """
    if device_format is None and source.startswith("/dev/"):
        device_format = default_device_format()

    logger.info(f"Opening media source {source} (format={device_format}, camera={camera})")
    try:
        player = MediaPlayer(source, format=device_format, options=options or {})
    except Exception as e:
        raise MediaAcquisitionError(f"Could not open media source {source}: {e}") from e

    media = LocalMedia(player, source)
    if not media.tracks:
        raise MediaAcquisitionError(f"Media source {source} has no audio or video")
    return media
