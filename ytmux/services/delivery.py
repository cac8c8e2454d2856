"""
Delivery strategies.

Both strategies execute the same three plans (passthrough, mp3 transcode,
dual-stream merge); they differ only in where the result goes first.
BufferedDelivery completes the job into a temporary file and serves it
with a Content-Length, so every failure is known before headers go out.
StreamingDelivery pipes output straight to the client and only primes the
first chunk; failures after that truncate the response.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from contextlib import aclosing, suppress
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Tuple, Type

from ytmux.config.settings import DownloadConfig
from ytmux.core.deadline import Deadline
from ytmux.core.errors import (
    ChannelUnavailable,
    DeadlineExceeded,
    DownloadError,
    ProcessFailure,
    SourceUnavailable,
)
from ytmux.models.internal import DownloadPlan, PlanKind
from ytmux.services.artifacts import ArtifactScope, read_file_chunks, write_stream_to_file
from ytmux.services.ffmpeg import (
    FileSink,
    FileSource,
    MediaProcessRunner,
    MediaSource,
    Operation,
    PipeSink,
    StreamSource,
)
from ytmux.services.source import StreamSourceProvider

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    body: AsyncIterator[bytes]
    content_length: Optional[int] = None


async def gather_or_cancel(*coros, deadline: Deadline):
    """
    Run coroutines concurrently and wait until every one is finished.
    The first failure cancels the rest; the deadline cancels all.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        done, pending = await asyncio.wait(
            tasks, timeout=deadline.remaining(), return_when=asyncio.FIRST_EXCEPTION
        )
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        if pending:
            raise DeadlineExceeded("Fetching source streams exceeded the download deadline")
        return [task.result() for task in tasks]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class PrimedStream:
    """A stream whose first chunk was already read; aclose() always reaches the rest"""

    def __init__(self, first: bytes, rest: AsyncIterator[bytes]):
        self._first: Optional[bytes] = first
        self._rest = rest

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._first is not None:
            chunk, self._first = self._first, None
            return chunk
        return await self._rest.__anext__()

    async def aclose(self) -> None:
        self._first = None
        await self._rest.aclose()


class DeliveryStrategy(ABC):
    """Turns a resolved plan into a response body"""

    name = "abstract"

    def __init__(self, provider: StreamSourceProvider, runner: MediaProcessRunner, settings: DownloadConfig):
        self.provider = provider
        self.runner = runner
        self.settings = settings

    async def deliver(self, plan: DownloadPlan, artifacts: ArtifactScope, deadline: Deadline) -> Delivery:
        if plan.kind == PlanKind.MP3_TRANSCODE:
            return await self.transcode_mp3(plan, artifacts, deadline)
        if plan.kind == PlanKind.MERGE:
            return await self.merge(plan, artifacts, deadline)
        return await self.passthrough(plan, artifacts, deadline)

    @abstractmethod
    async def passthrough(self, plan: DownloadPlan, artifacts: ArtifactScope, deadline: Deadline) -> Delivery:
        ...

    @abstractmethod
    async def transcode_mp3(self, plan: DownloadPlan, artifacts: ArtifactScope, deadline: Deadline) -> Delivery:
        ...

    @abstractmethod
    async def merge(self, plan: DownloadPlan, artifacts: ArtifactScope, deadline: Deadline) -> Delivery:
        ...

    def _mp3_operation(self) -> Operation:
        return Operation.mp3(self.settings.mp3_bitrate_kbps)

    async def _fetch_to_files(
        self, plan: DownloadPlan, artifacts: ArtifactScope, deadline: Deadline
    ) -> Tuple[str, str]:
        """Download video and audio side by side; both must finish before any merge"""
        video = self.provider.stream(plan.url, plan.primary)
        audio = self.provider.stream(plan.url, plan.secondary)
        video_file = artifacts.allocate("video", plan.primary.container)
        audio_file = artifacts.allocate("audio", plan.secondary.container)

        await gather_or_cancel(
            write_stream_to_file(video.chunks(), video_file.path),
            write_stream_to_file(audio.chunks(), audio_file.path),
            deadline=deadline,
        )
        return video_file.path, audio_file.path


class BufferedDelivery(DeliveryStrategy):
    """Finish into a temporary file, then serve it"""

    name = "buffered"

    async def _bounded(self, coro, deadline: Deadline):
        try:
            return await asyncio.wait_for(coro, deadline.remaining())
        except asyncio.TimeoutError:
            raise DeadlineExceeded("Download exceeded its deadline")

    def _serve(self, path: str) -> Delivery:
        size = os.path.getsize(path)
        if size == 0:
            raise ProcessFailure("No media data was produced")
        return Delivery(read_file_chunks(path, self.settings.chunk_size), size)

    async def passthrough(self, plan, artifacts, deadline):
        handle = self.provider.stream(plan.url, plan.primary)
        target = artifacts.allocate("source", plan.extension)
        await self._bounded(write_stream_to_file(handle.chunks(), target.path), deadline)
        return self._serve(target.path)

    async def transcode_mp3(self, plan, artifacts, deadline):
        handle = self.provider.stream(plan.url, plan.primary)
        target = artifacts.allocate("audio", "mp3")
        await self.runner.run(
            {"audio": StreamSource(handle.chunks())},
            FileSink(target.path),
            self._mp3_operation(),
            deadline,
        )
        return self._serve(target.path)

    async def merge(self, plan, artifacts, deadline):
        video_path, audio_path = await self._fetch_to_files(plan, artifacts, deadline)
        target = artifacts.allocate("merged", "mp4")
        await self.runner.run(
            {"video": FileSource(video_path), "audio": FileSource(audio_path)},
            FileSink(target.path),
            Operation.remux(),
            deadline,
        )
        return self._serve(target.path)


class StreamingDelivery(DeliveryStrategy):
    """Pipe output straight to the client"""

    name = "streaming"

    async def _primed(self, chunks: AsyncIterator[bytes], empty_error: Type[DownloadError]) -> AsyncIterator[bytes]:
        """Wait for the first chunk so early failures are still reported before headers"""
        try:
            first = await chunks.__anext__()
        except StopAsyncIteration:
            raise empty_error("No media data was produced")
        except BaseException:
            await chunks.aclose()
            raise
        return PrimedStream(first, chunks)

    @staticmethod
    async def _bounded_iter(chunks: AsyncIterator[bytes], deadline: Deadline) -> AsyncIterator[bytes]:
        async with aclosing(chunks) as stream:
            while True:
                try:
                    chunk = await asyncio.wait_for(stream.__anext__(), deadline.remaining())
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    raise DeadlineExceeded("Download exceeded its deadline")
                yield chunk

    async def _pipe(
        self, inputs: Dict[str, MediaSource], operation: Operation, deadline: Deadline
    ) -> AsyncIterator[bytes]:
        sink = PipeSink()
        task = asyncio.create_task(self.runner.run(inputs, sink, operation, deadline))
        try:
            async for chunk in sink.chunks():
                yield chunk
            await task
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            elif not task.cancelled():
                # Mark the outcome as retrieved when the consumer stopped early
                task.exception()

    async def passthrough(self, plan, artifacts, deadline):
        handle = self.provider.stream(plan.url, plan.primary)
        body = await self._primed(self._bounded_iter(handle.chunks(), deadline), SourceUnavailable)
        return Delivery(body)

    async def transcode_mp3(self, plan, artifacts, deadline):
        handle = self.provider.stream(plan.url, plan.primary)
        inputs = {"audio": StreamSource(handle.chunks())}
        body = await self._primed(self._pipe(inputs, self._mp3_operation(), deadline), ProcessFailure)
        return Delivery(body)

    async def merge(self, plan, artifacts, deadline):
        if self.runner.supports_extra_channels:
            video = self.provider.stream(plan.url, plan.primary)
            audio = self.provider.stream(plan.url, plan.secondary)
            inputs = {"video": StreamSource(video.chunks()), "audio": StreamSource(audio.chunks())}
            try:
                body = await self._primed(self._pipe(inputs, Operation.remux(), deadline), ProcessFailure)
                return Delivery(body)
            except ChannelUnavailable as e:
                logger.warning(f"Falling back to file inputs for merge: {e}")

        video_path, audio_path = await self._fetch_to_files(plan, artifacts, deadline)
        inputs = {"video": FileSource(video_path), "audio": FileSource(audio_path)}
        body = await self._primed(self._pipe(inputs, Operation.remux(), deadline), ProcessFailure)
        return Delivery(body)


STRATEGIES = {
    BufferedDelivery.name: BufferedDelivery,
    StreamingDelivery.name: StreamingDelivery,
}
