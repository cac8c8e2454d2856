import asyncio
import json
import logging
import re
from collections import deque
from contextlib import suppress
from typing import Any, AsyncIterator, Dict, Optional

from ytmux.config.settings import Config
from ytmux.core.deadline import Deadline
from ytmux.core.errors import DeadlineExceeded, SourceUnavailable
from ytmux.infra.redis import get_redis
from ytmux.models.internal import SourceInfo, StreamDescriptor
from ytmux.services.ytdlp import SubprocessExecutor, YTDLPCommandBuilder
from ytmux.utils.hash import hash_stable

logger = logging.getLogger(__name__)

STDERR_MAX_LINES = 50
QUALITY_LABEL_RE = re.compile(r"^\d+p")


def _codec(value: Optional[str]) -> Optional[str]:
    if not value or value == "none":
        return None
    return value


def _quality_label(fmt: Dict[str, Any], has_video: bool, bitrate: Optional[float]) -> str:
    if has_video:
        note = fmt.get("format_note") or ""
        if QUALITY_LABEL_RE.match(note):
            return note
        height = fmt.get("height")
        if height:
            fps = fmt.get("fps") or 0
            return f"{height}p{int(fps)}" if fps > 30 else f"{height}p"
        return note or "unknown"
    if bitrate:
        return f"{round(bitrate)}kbps"
    return fmt.get("format_note") or "audio"


def parse_stream(fmt: Dict[str, Any]) -> Optional[StreamDescriptor]:
    """Map one yt-dlp format dict onto a StreamDescriptor (None for storyboards etc.)"""
    vcodec = _codec(fmt.get("vcodec"))
    acodec = _codec(fmt.get("acodec"))
    if vcodec is None and acodec is None:
        return None

    has_video = vcodec is not None
    has_audio = acodec is not None
    bitrate = fmt.get("abr") if not has_video else fmt.get("tbr")

    return StreamDescriptor(
        itag=str(fmt.get("format_id")),
        container=fmt.get("ext") or "unknown",
        quality_label=_quality_label(fmt, has_video, bitrate),
        has_audio=has_audio,
        has_video=has_video,
        bitrate=bitrate,
        height=fmt.get("height"),
        fps=fmt.get("fps"),
        vcodec=vcodec,
        acodec=acodec,
        protocol=fmt.get("protocol"),
    )


def parse_source_info(info: Dict[str, Any]) -> SourceInfo:
    streams = []
    for fmt in info.get("formats") or []:
        descriptor = parse_stream(fmt)
        if descriptor is not None:
            streams.append(descriptor)

    return SourceInfo(
        video_id=info.get("id"),
        title=info.get("title") or "Unknown",
        thumbnail=info.get("thumbnail"),
        is_live=bool(info.get("is_live")),
        streams=streams,
    )


class StreamHandle:
    """
    One remote rendition ready to be read.
    The yt-dlp process is only spawned when chunks() is iterated.
    """

    def __init__(self, descriptor: StreamDescriptor, cmd: list, chunk_size: int):
        self.descriptor = descriptor
        self._cmd = cmd
        self._chunk_size = chunk_size

    async def chunks(self) -> AsyncIterator[bytes]:
        process = await asyncio.create_subprocess_exec(
            *self._cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL
        )

        stderr_lines = deque(maxlen=STDERR_MAX_LINES)

        async def drain_stderr():
            """Drain stderr to prevent buffer deadlock"""
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                stderr_lines.append(line.decode(errors="replace").strip())

        stderr_task = asyncio.create_task(drain_stderr())
        completed = False

        try:
            while True:
                chunk = await process.stdout.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk

            returncode = await process.wait()
            await stderr_task
            if returncode != 0:
                error_summary = "\n".join(stderr_lines)
                raise SourceUnavailable(
                    f"Fetching stream {self.descriptor.itag} failed: {error_summary[-200:] or returncode}"
                )
            completed = True
        finally:
            if not completed and process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()
            with suppress(asyncio.CancelledError):
                await stderr_task


class StreamSourceProvider:
    """Resolve YouTube references and open individual renditions through yt-dlp"""

    def __init__(self, config: Config):
        self.config = config
        self.commands = YTDLPCommandBuilder(config.source)

    async def describe(self, url: str, deadline: Optional[Deadline] = None) -> SourceInfo:
        """
        Fetch video metadata with Redis caching.
        Reduces load from repeated requests for same URL.
        """
        cache_key = f"info:{hash_stable(url)}"
        redis = get_redis()

        if redis:
            try:
                cached = await redis.get(cache_key)
                if cached:
                    return SourceInfo.model_validate_json(cached)
            except Exception as e:
                logger.warning(f"Info cache read failed: {e}")

        timeout = self.config.download.info_timeout
        if deadline is not None:
            timeout = deadline.bound(timeout)

        cmd = self.commands.build_info_command(url)
        try:
            result = await SubprocessExecutor.run(cmd, timeout=timeout)
        except asyncio.TimeoutError:
            raise DeadlineExceeded("Timed out while extracting video information")
        except OSError as e:
            raise SourceUnavailable(f"Could not start yt-dlp: {e}")

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace").strip()
            raise SourceUnavailable(f"Could not extract video information: {error_msg[-200:]}")

        # --match-filter skips live videos silently with an empty stdout
        stdout = result.stdout.decode(errors="replace").strip()
        if not stdout:
            raise SourceUnavailable("Live streams are not supported")

        try:
            info = json.loads(stdout.splitlines()[0])
        except json.JSONDecodeError:
            raise SourceUnavailable("Failed to parse yt-dlp output")

        source = parse_source_info(info)
        if source.is_live and not self.config.source.enable_live_streams:
            raise SourceUnavailable("Live streams are not supported")

        if redis and self.config.redis.info_cache_ttl:
            try:
                await redis.setex(cache_key, self.config.redis.info_cache_ttl, source.model_dump_json())
            except Exception as e:
                logger.warning(f"Info cache write failed: {e}")

        return source

    async def open(self, url: str, itag: str, deadline: Optional[Deadline] = None) -> StreamHandle:
        """Resolve one rendition; raises SourceUnavailable if the itag no longer exists"""
        source = await self.describe(url, deadline)
        descriptor = source.find(itag)
        if descriptor is None:
            raise SourceUnavailable(f"Stream {itag} is not available for this video")
        return self.stream(url, descriptor)

    def stream(self, url: str, descriptor: StreamDescriptor) -> StreamHandle:
        """Handle for an already resolved rendition"""
        return StreamHandle(
            descriptor,
            self.commands.build_stream_command(url, descriptor.itag),
            self.config.download.chunk_size,
        )
