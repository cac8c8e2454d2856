"""
ffmpeg process runner.

Inputs are addressed by name and are either files or asynchronous byte
streams. A single stream input is fed through stdin; two or more stream
inputs each get their own OS pipe handed to the child (``pipe:<fd>``),
which is only possible where the platform supports passing extra
descriptors. Output goes either to a file or back to the caller through a
PipeSink.
"""
import asyncio
import logging
import os
from collections import deque
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Union

import aiofiles

from ytmux.config.settings import MediaConfig
from ytmux.core.deadline import Deadline
from ytmux.core.errors import (
    ChannelUnavailable,
    DeadlineExceeded,
    DownloadError,
    ProcessFailure,
    SourceUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 256 * 1024
FRAGMENTED_MP4_FLAGS = "frag_keyframe+empty_moov+default_base_moof"


class OperationKind(Enum):
    REMUX = "remux"
    MP3 = "mp3"
    COPY = "copy"


@dataclass(frozen=True)
class Operation:
    """What ffmpeg does with its inputs"""
    kind: OperationKind
    container: str
    audio_bitrate_kbps: Optional[int] = None

    @classmethod
    def remux(cls) -> "Operation":
        """Video track of the first input + audio track of the second, no re-encode"""
        return cls(OperationKind.REMUX, "mp4")

    @classmethod
    def mp3(cls, bitrate_kbps: int = 128) -> "Operation":
        return cls(OperationKind.MP3, "mp3", bitrate_kbps)

    @classmethod
    def copy(cls, container: str = "mp4") -> "Operation":
        return cls(OperationKind.COPY, container)


@dataclass
class StreamSource:
    chunks: AsyncIterator[bytes]


@dataclass
class FileSource:
    path: str


MediaSource = Union[StreamSource, FileSource]


@dataclass
class FileSink:
    path: str


class PipeSink:
    """
    Bounded hand-off of ffmpeg stdout to a consumer.
    The producer blocks once max_chunks are queued; close() never blocks.
    """

    def __init__(self, max_chunks: int = 8):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._slots = asyncio.Semaphore(max_chunks)
        self._closed = False

    async def write(self, chunk: bytes) -> None:
        await self._slots.acquire()
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            self._slots.release()
            yield chunk


MediaSink = Union[FileSink, PipeSink]


@dataclass
class ProcessOutcome:
    returncode: int
    stderr_tail: str = ""
    bytes_written: int = 0


@dataclass
class _Channel:
    name: str
    target: str
    source: Optional[StreamSource] = None
    stdin: bool = False
    read_fd: Optional[int] = None
    write_fd: Optional[int] = None


class FFmpegCommandBuilder:
    """Build ffmpeg commands"""

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary

    def build_version_command(self) -> List[str]:
        return [self.binary, "-version"]

    def build(
        self,
        input_targets: List[str],
        output_target: str,
        operation: Operation,
        to_pipe: bool,
        reads_stdin: bool = False,
    ) -> List[str]:
        cmd = [self.binary, "-hide_banner", "-loglevel", "warning", "-y"]
        if not reads_stdin:
            cmd.append("-nostdin")

        for target in input_targets:
            cmd.extend(["-i", target])

        if operation.kind == OperationKind.REMUX:
            if len(input_targets) != 2:
                raise ValueError("remux needs exactly a video input and an audio input")
            cmd.extend(["-map", "0:v:0", "-map", "1:a:0", "-c", "copy"])
        elif operation.kind == OperationKind.MP3:
            cmd.extend([
                "-map", "0:a:0",
                "-vn",
                "-c:a", "libmp3lame",
                "-b:a", f"{operation.audio_bitrate_kbps}k",
            ])
        else:
            cmd.extend(["-map", "0", "-c", "copy"])

        if operation.container == "mp4":
            # A pipe cannot be seeked back to write the moov atom
            cmd.extend(["-movflags", FRAGMENTED_MP4_FLAGS if to_pipe else "+faststart"])

        cmd.extend(["-f", operation.container, output_target])
        return cmd


class MediaProcessRunner:
    """Run ffmpeg over named inputs and report the outcome"""

    supports_extra_channels = os.name == "posix"

    def __init__(self, settings: MediaConfig, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.settings = settings
        self.chunk_size = chunk_size
        self.commands = FFmpegCommandBuilder(settings.ffmpeg_path)

    def _open_channels(self, inputs: Dict[str, MediaSource]) -> List[_Channel]:
        stream_count = sum(1 for source in inputs.values() if isinstance(source, StreamSource))
        use_stdin = stream_count == 1
        if stream_count > 1 and not self.supports_extra_channels:
            raise ChannelUnavailable("This platform cannot pass extra pipes to ffmpeg")

        channels: List[_Channel] = []
        try:
            for name, source in inputs.items():
                if isinstance(source, FileSource):
                    channels.append(_Channel(name, source.path))
                elif use_stdin:
                    channels.append(_Channel(name, "pipe:0", source=source, stdin=True))
                else:
                    read_fd, write_fd = os.pipe()
                    channels.append(
                        _Channel(name, f"pipe:{read_fd}", source=source, read_fd=read_fd, write_fd=write_fd)
                    )
        except OSError as e:
            self._close_channels(channels)
            raise ChannelUnavailable(f"Could not open input pipes: {e}")
        return channels

    @staticmethod
    def _close_channels(channels: List[_Channel]) -> None:
        for channel in channels:
            for attr in ("read_fd", "write_fd"):
                fd = getattr(channel, attr)
                if fd is not None:
                    with suppress(OSError):
                        os.close(fd)
                    setattr(channel, attr, None)

    async def run(
        self,
        inputs: Dict[str, MediaSource],
        output: MediaSink,
        operation: Operation,
        deadline: Optional[Deadline] = None,
    ) -> ProcessOutcome:
        """
        Run ffmpeg to completion.
        Raises ProcessFailure on a non-zero exit, SourceUnavailable when an
        input stream fails, DeadlineExceeded when the deadline passes and
        ChannelUnavailable (before spawning) when stream inputs cannot be
        wired. The sink is always closed on return.
        """
        channels: List[_Channel] = []
        try:
            channels = self._open_channels(inputs)
            timeout = deadline.remaining() if deadline is not None else None
            try:
                return await asyncio.wait_for(self._execute(channels, output, operation), timeout)
            except asyncio.TimeoutError:
                raise DeadlineExceeded("Media processing exceeded the download deadline")
        finally:
            self._close_channels(channels)
            if isinstance(output, PipeSink):
                output.close()

    async def _execute(
        self,
        channels: List[_Channel],
        output: MediaSink,
        operation: Operation,
    ) -> ProcessOutcome:
        to_pipe = isinstance(output, PipeSink)
        reads_stdin = any(channel.stdin for channel in channels)
        cmd = self.commands.build(
            [channel.target for channel in channels],
            "pipe:1" if to_pipe else output.path,
            operation,
            to_pipe=to_pipe,
            reads_stdin=reads_stdin,
        )
        logger.debug(f"Running {' '.join(cmd)}")

        extra = {}
        pass_fds = tuple(channel.read_fd for channel in channels if channel.read_fd is not None)
        if pass_fds:
            extra["pass_fds"] = pass_fds

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if reads_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if to_pipe else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                **extra
            )
        except OSError as e:
            raise ProcessFailure(f"Could not start ffmpeg: {e}")

        # The child owns the read ends now
        for channel in channels:
            if channel.read_fd is not None:
                os.close(channel.read_fd)
                channel.read_fd = None

        stderr_lines = deque(maxlen=self.settings.stderr_max_lines)
        written = 0

        async def drain_stderr():
            """Diagnostics are advisory; the exit code decides"""
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                decoded = line.decode(errors="replace").rstrip()
                stderr_lines.append(decoded)
                logger.debug(f"ffmpeg: {decoded}")

        async def feed_stdin(source: StreamSource):
            try:
                async with aclosing(source.chunks) as chunks:
                    async for chunk in chunks:
                        process.stdin.write(chunk)
                        await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("ffmpeg closed stdin early")
            finally:
                process.stdin.close()

        async def feed_pipe(channel: _Channel):
            write_fd, channel.write_fd = channel.write_fd, None
            try:
                async with aiofiles.open(write_fd, "wb") as pipe:
                    async with aclosing(channel.source.chunks) as chunks:
                        async for chunk in chunks:
                            await pipe.write(chunk)
            except (BrokenPipeError, ConnectionResetError):
                logger.debug(f"ffmpeg closed input {channel.name} early")

        async def pump_stdout():
            nonlocal written
            while True:
                chunk = await process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                await output.write(chunk)

        async def guarded(name: str, coro):
            try:
                await coro
            except DownloadError:
                raise
            except (OSError, ValueError) as e:
                raise SourceUnavailable(f"Input {name} failed: {e}")

        stderr_task = asyncio.create_task(drain_stderr())
        workers = []
        for channel in channels:
            if channel.stdin:
                workers.append(asyncio.create_task(guarded(channel.name, feed_stdin(channel.source))))
            elif channel.source is not None:
                workers.append(asyncio.create_task(guarded(channel.name, feed_pipe(channel))))
        if to_pipe:
            workers.append(asyncio.create_task(pump_stdout()))

        try:
            if workers:
                await asyncio.gather(*workers)
            returncode = await process.wait()
            await stderr_task
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            for worker in workers:
                worker.cancel()
            for worker in workers:
                with suppress(BaseException):
                    await worker
            raise
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            with suppress(asyncio.CancelledError):
                await stderr_task

        stderr_tail = "\n".join(stderr_lines)
        if returncode != 0:
            raise ProcessFailure(
                f"ffmpeg exited with code {returncode}: {stderr_tail[-200:]}",
                returncode=returncode,
                stderr=stderr_tail,
            )

        if not to_pipe:
            written = os.path.getsize(output.path)
        return ProcessOutcome(returncode=returncode, stderr_tail=stderr_tail, bytes_written=written)
