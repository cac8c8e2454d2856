import asyncio
import os
from typing import Dict, List, Optional

import aiofiles
import pytest
from httpx import ASGITransport, AsyncClient

from ytmux.api.deps import get_config, get_provider, get_runner
from ytmux.config.settings import Config, DownloadConfig
from ytmux.core.errors import SourceUnavailable
from ytmux.main import app
from ytmux.models.internal import SourceInfo, StreamDescriptor
from ytmux.services.ffmpeg import FileSink, FileSource, OperationKind, PipeSink, ProcessOutcome, StreamSource

VIDEO_URL = "https://www.youtube.com/watch?v=abc12345678"


def make_stream(itag, container, label, has_audio, has_video, bitrate=None, height=None, fps=None):
    return StreamDescriptor(
        itag=itag,
        container=container,
        quality_label=label,
        has_audio=has_audio,
        has_video=has_video,
        bitrate=bitrate,
        height=height,
        fps=fps,
        vcodec="avc1.4d401f" if has_video else None,
        acodec="mp4a.40.2" if has_audio else None,
        protocol="https",
    )


def sample_source() -> SourceInfo:
    # Ascending order, the way yt-dlp lists formats
    return SourceInfo(
        video_id="abc12345678",
        title="My Clip",
        thumbnail="https://i.ytimg.com/vi/abc12345678/hqdefault.jpg",
        streams=[
            make_stream("139", "m4a", "49kbps", True, False, bitrate=48.8),
            make_stream("140", "m4a", "130kbps", True, False, bitrate=129.5),
            make_stream("251", "webm", "160kbps", True, False, bitrate=160.1),
            make_stream("18", "mp4", "360p", True, True, bitrate=500.0, height=360, fps=30),
            make_stream("135", "mp4", "480p", False, True, bitrate=900.0, height=480, fps=30),
            make_stream("136", "mp4", "720p", False, True, bitrate=1500.0, height=720, fps=30),
            make_stream("22", "mp4", "720p", True, True, bitrate=1700.0, height=720, fps=30),
            make_stream("247", "webm", "720p", False, True, bitrate=1400.0, height=720, fps=30),
            make_stream("137", "mp4", "1080p", False, True, bitrate=4000.0, height=1080, fps=30),
        ],
    )


class FakeStreamHandle:
    def __init__(self, descriptor, payload: bytes, error: Optional[Exception] = None, delay: float = 0):
        self.descriptor = descriptor
        self.payload = payload
        self.error = error
        self.delay = delay
        self.closed = False

    async def chunks(self):
        try:
            for i in range(0, len(self.payload), 4):
                if self.delay:
                    await asyncio.sleep(self.delay)
                else:
                    await asyncio.sleep(0)
                yield self.payload[i:i + 4]
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class FakeStreamSourceProvider:
    """In-memory stand-in for yt-dlp"""

    def __init__(self, source: Optional[SourceInfo] = None, payloads: Optional[Dict[str, bytes]] = None):
        self.source = source or sample_source()
        self.payloads = payloads or {}
        self.errors: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.describe_error: Optional[Exception] = None
        self.describe_calls = 0
        self.handles: List[FakeStreamHandle] = []

    async def describe(self, url, deadline=None):
        self.describe_calls += 1
        if self.describe_error is not None:
            raise self.describe_error
        return self.source

    async def open(self, url, itag, deadline=None):
        source = await self.describe(url, deadline)
        descriptor = source.find(itag)
        if descriptor is None:
            raise SourceUnavailable(f"Stream {itag} is not available for this video")
        return self.stream(url, descriptor)

    def stream(self, url, descriptor):
        handle = FakeStreamHandle(
            descriptor,
            self.payloads.get(descriptor.itag, f"<{descriptor.itag}>".encode() * 8),
            self.errors.get(descriptor.itag),
            self.delays.get(descriptor.itag, 0),
        )
        self.handles.append(handle)
        return handle


class FakeMediaRunner:
    """
    Records what it was asked to do and writes a predictable payload:
    b"<operation>:" followed by each input as b"[name]<bytes>".
    """

    supports_extra_channels = True

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = []

    async def run(self, inputs, output, operation, deadline=None):
        try:
            self.calls.append({
                "inputs": {name: type(source).__name__ for name, source in inputs.items()},
                "output": type(output).__name__,
                "operation": operation,
            })
            payload = operation.kind.value.encode() + b":"
            for name, source in inputs.items():
                data = b""
                if isinstance(source, StreamSource):
                    async for chunk in source.chunks:
                        data += chunk
                elif isinstance(source, FileSource):
                    async with aiofiles.open(source.path, "rb") as f:
                        data = await f.read()
                payload += f"[{name}]".encode() + data

            if self.error is not None:
                raise self.error

            if isinstance(output, FileSink):
                async with aiofiles.open(output.path, "wb") as f:
                    await f.write(payload)
            else:
                for i in range(0, len(payload), 16):
                    await output.write(payload[i:i + 16])
            return ProcessOutcome(returncode=0, bytes_written=len(payload))
        finally:
            if isinstance(output, PipeSink):
                output.close()


def expected_output(kind: OperationKind, parts) -> bytes:
    payload = kind.value.encode() + b":"
    for name, data in parts:
        payload += f"[{name}]".encode() + data
    return payload


@pytest.fixture
def temp_dir(tmp_path):
    path = tmp_path / "artifacts"
    path.mkdir()
    return str(path)


def make_config(temp_dir: str, delivery: str = "buffered", timeout: float = 30) -> Config:
    return Config(download=DownloadConfig(temp_dir=temp_dir, delivery=delivery, timeout_seconds=timeout))


@pytest.fixture
def provider():
    return FakeStreamSourceProvider()


@pytest.fixture
def runner():
    return FakeMediaRunner()


@pytest.fixture(params=["buffered", "streaming"])
def delivery(request):
    return request.param


@pytest.fixture
def api(temp_dir, provider, runner, delivery):
    """App wired to the in-memory provider/runner"""
    settings = make_config(temp_dir, delivery)
    app.dependency_overrides[get_config] = lambda: settings
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_runner] = lambda: runner
    yield app
    app.dependency_overrides.clear()


def http_client(application) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=application), base_url="http://test")


def leftover_files(path: str) -> List[str]:
    return sorted(os.listdir(path))
