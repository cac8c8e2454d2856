import re
from enum import Enum, auto
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlparse

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
}
SHORT_HOSTS = {"youtu.be", "www.youtu.be"}

VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
PATH_ID_RE = re.compile(r"^/(?:shorts|embed|live|v)/([^/?#]+)")


class UrlValidationResult(Enum):
    """URL validation result without throwing exceptions"""
    OK = auto()
    UNSUPPORTED = auto()
    INVALID = auto()


class SourceValidator:
    """
    Validate that a reference points at a single YouTube video.
    Returns result enum for separation of concerns; only OK references
    are ever handed to yt-dlp.
    """

    @staticmethod
    def extract_video_id(url: str) -> Tuple[UrlValidationResult, Optional[str]]:
        if not url or not isinstance(url, str):
            return UrlValidationResult.INVALID, None

        candidate = url.strip()
        if "://" not in candidate:
            candidate = f"https://{candidate}"

        try:
            parsed = urlparse(candidate)
            hostname = (parsed.hostname or "").lower()
        except ValueError:
            return UrlValidationResult.INVALID, None

        if parsed.scheme not in ("http", "https") or not hostname:
            return UrlValidationResult.INVALID, None

        video_id = None
        if hostname in SHORT_HOSTS:
            video_id = parsed.path.lstrip("/").split("/")[0]
        elif hostname in YOUTUBE_HOSTS:
            if parsed.path == "/watch":
                video_id = (parse_qs(parsed.query).get("v") or [None])[0]
            else:
                match = PATH_ID_RE.match(parsed.path)
                if match:
                    video_id = match.group(1)
        else:
            return UrlValidationResult.UNSUPPORTED, None

        if not video_id or not VIDEO_ID_RE.match(video_id):
            return UrlValidationResult.INVALID, None

        return UrlValidationResult.OK, video_id

    @staticmethod
    def canonical_url(url: str) -> Optional[str]:
        """Normalize watch/shorts/embed/youtu.be references into one watch URL"""
        result, video_id = SourceValidator.extract_video_id(url)
        if result != UrlValidationResult.OK:
            return None
        return f"https://www.youtube.com/watch?v={video_id}"
