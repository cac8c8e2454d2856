from .internal import DownloadPlan, PlanKind, SourceInfo, StreamDescriptor
from .request import DownloadRequest, InfoRequest, MediaFormat
from .response import ErrorResponse, FormatOption, VideoInfo

__all__ = [
    "DownloadPlan",
    "DownloadRequest",
    "ErrorResponse",
    "FormatOption",
    "InfoRequest",
    "MediaFormat",
    "PlanKind",
    "SourceInfo",
    "StreamDescriptor",
    "VideoInfo",
]
