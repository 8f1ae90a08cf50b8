"""Local capture and playback health of received streams."""

from hostmesh.media.capture import Capabilities, LocalMedia, acquire_media, probe_capabilities
from hostmesh.media.watchdog import (
    EVENT_VIDEO_LOST,
    EVENT_VIDEO_RESTORED,
    PlaybackSink,
    PlaybackWatchdog,
    TrackSink,
)

__all__ = [
    "Capabilities",
    "EVENT_VIDEO_LOST",
    "EVENT_VIDEO_RESTORED",
    "LocalMedia",
    "PlaybackSink",
    "PlaybackWatchdog",
    "TrackSink",
    "acquire_media",
    "probe_capabilities",
]
