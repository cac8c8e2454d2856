from ytmux.config.settings import Config
from ytmux.core.deadline import Deadline
from ytmux.models.request import InfoRequest
from ytmux.models.response import VideoInfo
from ytmux.services.format import FormatMenu
from ytmux.services.source import StreamSourceProvider


class VideoInfoService:
    """Video info fetching service"""

    def __init__(self, config: Config, provider: StreamSourceProvider):
        self.config = config
        self.provider = provider
        self.menu = FormatMenu(config.source)

    async def fetch(self, info_request: InfoRequest) -> VideoInfo:
        """Describe the video and reduce its renditions to the download menu"""
        source = await self.provider.describe(
            info_request.url, Deadline(self.config.download.info_timeout)
        )

        audio_formats = self.menu.audio_options(source.streams)
        default_audio = audio_formats[0].itag if audio_formats else None
        video_formats = self.menu.video_options(source.streams, default_audio)

        return VideoInfo(
            title=source.title,
            thumbnail=source.thumbnail,
            video_formats=video_formats,
            audio_formats=audio_formats,
        )
