import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Dict

from ytmux.config.settings import Config
from ytmux.core.deadline import Deadline
from ytmux.core.errors import DownloadError, SourceUnavailable
from ytmux.models.internal import DownloadPlan, PlanKind, SourceInfo
from ytmux.models.request import DownloadRequest, MediaFormat
from ytmux.services.artifacts import ArtifactScope
from ytmux.services.delivery import STRATEGIES, Delivery, DeliveryStrategy
from ytmux.services.ffmpeg import MediaProcessRunner
from ytmux.services.source import StreamSourceProvider
from ytmux.utils.filename import sanitize_filename

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    MediaFormat.MP3: "audio/mpeg",
    MediaFormat.MP4: "video/mp4",
}


class ResponseState(Enum):
    NOT_SENT = "not_sent"
    SENT = "sent"


class ResponseLifecycle:
    """Headers and status go out at most once; after that only body bytes may follow"""

    def __init__(self):
        self.state = ResponseState.NOT_SENT
        self.bytes_sent = 0

    @property
    def started(self) -> bool:
        return self.state == ResponseState.SENT

    def begin(self) -> None:
        if self.started:
            raise RuntimeError("Response already started")
        self.state = ResponseState.SENT

    def record(self, size: int) -> None:
        self.bytes_sent += size


class PreparedDownload:
    """Everything the HTTP layer needs to send a download"""

    def __init__(
        self,
        filename: str,
        media_type: str,
        delivery: Delivery,
        artifacts: ArtifactScope,
        request_id: str,
    ):
        self.filename = filename
        self.media_type = media_type
        self.content_length = delivery.content_length
        self.lifecycle = ResponseLifecycle()
        self._delivery = delivery
        self._artifacts = artifacts
        self._request_id = request_id
        self._body = self._iterate()

    @property
    def headers(self) -> Dict[str, str]:
        headers = {
            "Content-Disposition": f'attachment; filename="{self.filename}"',
            "X-Content-Type-Options": "nosniff",
            "Cache-Control": "no-cache",
        }
        if self.content_length is not None:
            headers["Content-Length"] = str(self.content_length)
        return headers

    @property
    def body(self) -> AsyncIterator[bytes]:
        return self._body

    async def _iterate(self) -> AsyncIterator[bytes]:
        extra = {"request_id": self._request_id}
        self.lifecycle.begin()
        try:
            async with aclosing(self._delivery.body) as chunks:
                async for chunk in chunks:
                    self.lifecycle.record(len(chunk))
                    yield chunk
            logger.info(f"Sent {self.filename} ({self.lifecycle.bytes_sent} bytes)", extra=extra)
        except (GeneratorExit, asyncio.CancelledError):
            logger.info(
                f"Client went away after {self.lifecycle.bytes_sent} bytes of {self.filename}", extra=extra
            )
            raise
        except Exception as e:
            # Headers are out: the only signal left is a truncated body
            logger.error(
                f"Aborting {self.filename} after {self.lifecycle.bytes_sent} bytes: {e}", extra=extra
            )
            raise
        finally:
            self._artifacts.cleanup()

    async def close(self) -> None:
        """Idempotent; releases processes and temp files even if the body never ran"""
        await self._body.aclose()
        await self._delivery.body.aclose()
        self._artifacts.cleanup()


class DownloadOrchestrator:
    """
    Turns a validated DownloadRequest into a PreparedDownload.

    Plan selection, first match wins:
    mp3 -> transcode the stream named by video_itag;
    mp4 with audio_itag -> fetch both and remux;
    mp4 alone -> passthrough.
    """

    def __init__(self, config: Config, provider: StreamSourceProvider, runner: MediaProcessRunner):
        self.config = config
        self.provider = provider
        self.runner = runner
        strategy_cls = STRATEGIES[config.download.delivery]
        self.strategy: DeliveryStrategy = strategy_cls(provider, runner, config.download)

    @staticmethod
    def plan(download: DownloadRequest) -> DownloadPlan:
        if download.format == MediaFormat.MP3:
            kind = PlanKind.MP3_TRANSCODE
            secondary = None
        elif download.audio_itag:
            kind = PlanKind.MERGE
            secondary = download.audio_itag
        else:
            kind = PlanKind.PASSTHROUGH
            secondary = None

        return DownloadPlan(
            kind=kind,
            url=download.url,
            primary_itag=download.video_itag,
            secondary_itag=secondary,
            extension=download.format.value,
            media_type=MEDIA_TYPES[download.format],
        )

    @staticmethod
    def resolve(plan: DownloadPlan, source: SourceInfo) -> DownloadPlan:
        primary = source.find(plan.primary_itag)
        if primary is None:
            raise SourceUnavailable(f"Stream {plan.primary_itag} is not available for this video")

        secondary = None
        if plan.secondary_itag:
            secondary = source.find(plan.secondary_itag)
            if secondary is None:
                raise SourceUnavailable(f"Stream {plan.secondary_itag} is not available for this video")

        return plan.model_copy(update={"primary": primary, "secondary": secondary})

    async def prepare(self, download: DownloadRequest, request_id: str = "-") -> PreparedDownload:
        """
        Run everything that can fail before headers are sent.
        Temporary artifacts are removed on every failure path here, and by
        the body (or PreparedDownload.close) afterwards.
        """
        extra = {"request_id": request_id}
        deadline = Deadline(self.config.download.timeout_seconds)
        artifacts = ArtifactScope(self.config.download.temp_dir, request_id)
        plan = self.plan(download)

        try:
            source = await self.provider.describe(plan.url, deadline)
            plan = self.resolve(plan, source)
            logger.info(
                f"Plan {plan.kind.value} via {self.strategy.name} "
                f"(itag {plan.primary_itag}{'+' + plan.secondary_itag if plan.secondary_itag else ''})",
                extra=extra,
            )
            delivery = await self.strategy.deliver(plan, artifacts, deadline)
        except DownloadError as e:
            logger.error(f"Download failed before response: {e}", extra=extra)
            artifacts.cleanup()
            raise
        except BaseException:
            artifacts.cleanup()
            raise

        filename = sanitize_filename(download.title or source.title, plan.extension)
        return PreparedDownload(filename, plan.media_type, delivery, artifacts, request_id)
