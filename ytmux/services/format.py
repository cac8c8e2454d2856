import re
from typing import Iterable, List, Optional

from ytmux.config.settings import SourceConfig
from ytmux.models.internal import StreamDescriptor
from ytmux.models.response import FormatOption

QUALITY_NUMBER_RE = re.compile(r"^(\d+)")

VIDEO_CONTAINERS = {"mp4"}
# AAC renditions are the ones that remux into mp4 without re-encoding
AUDIO_CONTAINERS = {"m4a", "mp4"}
DIRECT_PROTOCOLS = {"http", "https"}
BITRATE_TIERS = (32, 48, 64, 96, 128, 160, 192, 256, 320)


def quality_number(label: str) -> int:
    match = QUALITY_NUMBER_RE.match(label or "")
    return int(match.group(1)) if match else 0


def bitrate_tier(bitrate: Optional[float]) -> Optional[int]:
    """Snap a measured bitrate (129.5) onto its nominal tier (128)"""
    if not bitrate:
        return None
    return min(BITRATE_TIERS, key=lambda tier: abs(tier - bitrate))


def _first_per_label(streams: Iterable[StreamDescriptor], label) -> List[StreamDescriptor]:
    seen = set()
    unique = []
    for stream in streams:
        key = label(stream)
        if key in seen:
            continue
        seen.add(key)
        unique.append(stream)
    return unique


def _is_direct(stream: StreamDescriptor) -> bool:
    return stream.protocol is None or stream.protocol in DIRECT_PROTOCOLS


class FormatMenu:
    """Make the compact download menu out of every rendition yt-dlp reports"""

    def __init__(self, settings: SourceConfig):
        self.settings = settings

    def audio_options(self, streams: List[StreamDescriptor]) -> List[FormatOption]:
        candidates = [
            s for s in streams
            if s.has_audio and not s.has_video
            and s.container in AUDIO_CONTAINERS
            and _is_direct(s)
            and bitrate_tier(s.bitrate) == self.settings.audio_bitrate_tier
        ]
        unique = _first_per_label(candidates, lambda s: bitrate_tier(s.bitrate))
        unique.sort(key=lambda s: s.bitrate or 0, reverse=True)

        return [
            FormatOption(
                itag=s.itag,
                quality=f"{bitrate_tier(s.bitrate)}kbps",
                container=s.container,
                has_audio=True,
                bitrate=s.bitrate,
            )
            for s in unique
        ]

    def video_options(self, streams: List[StreamDescriptor], default_audio_itag: Optional[str]) -> List[FormatOption]:
        candidates = [
            s for s in streams
            if s.has_video
            and s.container in VIDEO_CONTAINERS
            and _is_direct(s)
            and 0 < quality_number(s.quality_label) <= self.settings.max_height
            # Video-only renditions need an audio stream to pair with
            and (s.has_audio or default_audio_itag is not None)
        ]
        unique = _first_per_label(candidates, lambda s: s.quality_label)
        unique.sort(key=lambda s: (quality_number(s.quality_label), s.fps or 0), reverse=True)

        return [
            FormatOption(
                itag=s.itag,
                quality=s.quality_label,
                container=s.container,
                has_audio=s.has_audio,
                audio_itag=None if s.has_audio else default_audio_itag,
                bitrate=s.bitrate,
            )
            for s in unique
        ]
