import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ytmux.core.security import SourceValidator, UrlValidationResult

ITAG_RE = re.compile(r"^[A-Za-z0-9_-]{1,32}$")


class MediaFormat(str, Enum):
    MP4 = "mp4"
    MP3 = "mp3"


def _validate_reference(v: str) -> str:
    result, _ = SourceValidator.extract_video_id(v)
    if result == UrlValidationResult.UNSUPPORTED:
        raise ValueError("Only YouTube video links are supported")
    if result == UrlValidationResult.INVALID:
        raise ValueError("Invalid YouTube video link")
    return SourceValidator.canonical_url(v)


class InfoRequest(BaseModel):
    url: str = Field(..., description="YouTube video URL")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _validate_reference(v)


class DownloadRequest(InfoRequest):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(None, description="Title used for the attachment filename")
    format: MediaFormat = Field(..., description="Target format: mp4 or mp3")
    video_itag: str = Field(..., alias="videoItag", description="Primary stream identifier (audio itag for mp3)")
    audio_itag: Optional[str] = Field(None, alias="audioItag", description="Audio stream merged into an mp4 download")

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("video_itag")
    @classmethod
    def validate_video_itag(cls, v):
        v = v.strip()
        if not ITAG_RE.match(v):
            raise ValueError("Invalid stream identifier")
        return v

    @field_validator("audio_itag", mode="before")
    @classmethod
    def validate_audio_itag(cls, v):
        """Treat empty/placeholder values sent by forms as absent"""
        if v is None:
            return None
        v = str(v).strip()
        if v in ("", "null", "undefined"):
            return None
        if not ITAG_RE.match(v):
            raise ValueError("Invalid stream identifier")
        return v
