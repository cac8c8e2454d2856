from .deadline import Deadline
from .errors import (
    ChannelUnavailable,
    DeadlineExceeded,
    DownloadError,
    InvalidRequest,
    ProcessFailure,
    SourceUnavailable,
)

__all__ = [
    "ChannelUnavailable",
    "Deadline",
    "DeadlineExceeded",
    "DownloadError",
    "InvalidRequest",
    "ProcessFailure",
    "SourceUnavailable",
]
