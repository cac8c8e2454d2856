class DownloadError(Exception):
    """Base error for a single download/info request. Never shared across requests."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(DownloadError):
    """Malformed or missing parameter; raised before any work starts"""
    status_code = 400


class SourceUnavailable(DownloadError):
    """The reference or a requested stream could not be resolved or fetched"""
    status_code = 500


class ProcessFailure(DownloadError):
    """ffmpeg exited non-zero"""
    status_code = 500

    def __init__(self, message: str, returncode: int = -1, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class DeadlineExceeded(DownloadError):
    status_code = 504


class ChannelUnavailable(DownloadError):
    """The platform cannot hand extra pipe channels to a child process"""
