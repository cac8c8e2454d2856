from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class StreamDescriptor(BaseModel):
    """One encoded rendition of a source video, as reported by yt-dlp"""
    model_config = ConfigDict(frozen=True)

    itag: str
    container: str
    quality_label: str
    has_audio: bool
    has_video: bool
    bitrate: Optional[float] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    protocol: Optional[str] = None


class SourceInfo(BaseModel):
    """Parsed metadata of one video reference"""
    video_id: Optional[str] = None
    title: str
    thumbnail: Optional[str] = None
    is_live: bool = False
    streams: List[StreamDescriptor] = []

    def find(self, itag: str) -> Optional[StreamDescriptor]:
        for stream in self.streams:
            if stream.itag == itag:
                return stream
        return None


class PlanKind(str, Enum):
    MP3_TRANSCODE = "mp3_transcode"
    MERGE = "merge"
    PASSTHROUGH = "passthrough"


class DownloadPlan(BaseModel):
    """Execution plan derived from a download request (separated from HTTP concerns)"""
    kind: PlanKind
    url: str
    primary_itag: str
    secondary_itag: Optional[str] = None
    extension: str
    media_type: str
    # Filled in once the itags are checked against the source
    primary: Optional[StreamDescriptor] = None
    secondary: Optional[StreamDescriptor] = None
