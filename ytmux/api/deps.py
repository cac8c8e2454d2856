from fastapi import Depends
from pydantic import ValidationError

from ytmux.config.settings import Config, config
from ytmux.services.ffmpeg import MediaProcessRunner
from ytmux.services.info import VideoInfoService
from ytmux.services.orchestrator import DownloadOrchestrator
from ytmux.services.source import StreamSourceProvider


def get_config() -> Config:
    return config


def get_provider(settings: Config = Depends(get_config)) -> StreamSourceProvider:
    return StreamSourceProvider(settings)


def get_runner(settings: Config = Depends(get_config)) -> MediaProcessRunner:
    return MediaProcessRunner(settings.media, settings.download.chunk_size)


def get_orchestrator(
    settings: Config = Depends(get_config),
    provider: StreamSourceProvider = Depends(get_provider),
    runner: MediaProcessRunner = Depends(get_runner),
) -> DownloadOrchestrator:
    return DownloadOrchestrator(settings, provider, runner)


def get_info_service(
    settings: Config = Depends(get_config),
    provider: StreamSourceProvider = Depends(get_provider),
) -> VideoInfoService:
    return VideoInfoService(settings, provider)


def validation_detail(error: ValidationError) -> str:
    """First validation problem as a client-facing message, named by query parameter"""
    first = error.errors()[0]
    param = ".".join(str(part) for part in first.get("loc", ())) or "request"
    if first.get("input") is None:
        return f"Missing required parameter: {param}"
    message = first.get("msg", "invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{param}: {message}"
