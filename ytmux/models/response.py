from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FormatOption(BaseModel):
    """Single entry of the download menu"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    itag: str
    quality: str
    container: str
    has_audio: bool
    audio_itag: Optional[str] = None
    bitrate: Optional[float] = None


class VideoInfo(BaseModel):
    """Video information response"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str
    thumbnail: Optional[str] = None
    video_formats: List[FormatOption] = Field(default_factory=list)
    audio_formats: List[FormatOption] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
