import asyncio
import os

import pytest

from conftest import VIDEO_URL, FakeMediaRunner, FakeStreamSourceProvider, leftover_files, make_config
from ytmux.core.deadline import Deadline
from ytmux.core.errors import DeadlineExceeded, SourceUnavailable
from ytmux.models.internal import PlanKind
from ytmux.models.request import DownloadRequest
from ytmux.services.delivery import PrimedStream, gather_or_cancel
from ytmux.services.orchestrator import DownloadOrchestrator, ResponseLifecycle


def make_request(**kwargs):
    params = {"url": VIDEO_URL, "format": "mp4", "videoItag": "18"}
    params.update(kwargs)
    return DownloadRequest(**params)


async def collect(body):
    data = b""
    async for chunk in body:
        data += chunk
    return data


def test_plan_mp3_ignores_audio_itag():
    plan = DownloadOrchestrator.plan(make_request(format="mp3", videoItag="140", audioItag="251"))
    assert plan.kind == PlanKind.MP3_TRANSCODE
    assert plan.primary_itag == "140"
    assert plan.secondary_itag is None
    assert plan.media_type == "audio/mpeg"
    assert plan.extension == "mp3"


def test_plan_merge():
    plan = DownloadOrchestrator.plan(make_request(videoItag="136", audioItag="140"))
    assert plan.kind == PlanKind.MERGE
    assert (plan.primary_itag, plan.secondary_itag) == ("136", "140")
    assert plan.media_type == "video/mp4"


def test_plan_passthrough():
    plan = DownloadOrchestrator.plan(make_request(format="MP4"))
    assert plan.kind == PlanKind.PASSTHROUGH
    assert plan.secondary_itag is None


def test_resolve_missing_itag():
    provider = FakeStreamSourceProvider()
    plan = DownloadOrchestrator.plan(make_request(videoItag="404"))
    with pytest.raises(SourceUnavailable):
        DownloadOrchestrator.resolve(plan, provider.source)


def test_lifecycle_begins_once():
    lifecycle = ResponseLifecycle()
    assert not lifecycle.started
    lifecycle.begin()
    assert lifecycle.started
    with pytest.raises(RuntimeError):
        lifecycle.begin()


@pytest.mark.asyncio
async def test_prepared_headers(temp_dir, delivery):
    orchestrator = DownloadOrchestrator(
        make_config(temp_dir, delivery), FakeStreamSourceProvider(), FakeMediaRunner()
    )
    prepared = await orchestrator.prepare(make_request(title="My Clip", format="mp3", videoItag="140"))
    try:
        assert prepared.filename == "My_Clip.mp3"
        assert prepared.media_type == "audio/mpeg"
        assert prepared.headers["Content-Disposition"] == 'attachment; filename="My_Clip.mp3"'
        assert prepared.headers["X-Content-Type-Options"] == "nosniff"
        if delivery == "buffered":
            assert int(prepared.headers["Content-Length"]) > 0
        else:
            assert "Content-Length" not in prepared.headers
        await collect(prepared.body)
        assert prepared.lifecycle.started
    finally:
        await prepared.close()


@pytest.mark.asyncio
async def test_concurrent_downloads_use_distinct_artifacts(temp_dir):
    provider = FakeStreamSourceProvider()
    provider.payloads["136"] = b"v" * 64
    provider.payloads["140"] = b"a" * 64
    orchestrator = DownloadOrchestrator(make_config(temp_dir), provider, FakeMediaRunner())

    first, second = await asyncio.gather(
        orchestrator.prepare(make_request(videoItag="136", audioItag="140"), request_id="one"),
        orchestrator.prepare(make_request(videoItag="136", audioItag="140"), request_id="two"),
    )
    paths_one = {a.path for a in first._artifacts.artifacts}
    paths_two = {a.path for a in second._artifacts.artifacts}
    assert len(paths_one) == 3
    assert paths_one.isdisjoint(paths_two)

    body_one, body_two = await asyncio.gather(collect(first.body), collect(second.body))
    assert body_one == body_two
    await first.close()
    await second.close()
    assert leftover_files(temp_dir) == []


@pytest.mark.asyncio
async def test_streaming_mid_stream_failure_truncates(temp_dir):
    """Once bytes are out the failure surfaces from the body, not as a status code"""
    provider = FakeStreamSourceProvider()
    provider.payloads["18"] = b"0123456789abcdef"
    provider.errors["18"] = SourceUnavailable("connection reset")
    orchestrator = DownloadOrchestrator(make_config(temp_dir, "streaming"), provider, FakeMediaRunner())

    prepared = await orchestrator.prepare(make_request())
    received = b""
    with pytest.raises(SourceUnavailable):
        async for chunk in prepared.body:
            received += chunk
    assert received == b"0123456789abcdef"
    assert prepared.lifecycle.bytes_sent == len(received)
    await prepared.close()


@pytest.mark.asyncio
async def test_client_abort_cleans_up(temp_dir):
    """Stopping after the first chunk releases the source stream and the temp files"""
    provider = FakeStreamSourceProvider()
    provider.payloads["136"] = b"v" * 400
    provider.payloads["140"] = b"a" * 400
    orchestrator = DownloadOrchestrator(make_config(temp_dir, "buffered"), provider, FakeMediaRunner())

    prepared = await orchestrator.prepare(make_request(videoItag="136", audioItag="140"))
    assert len(leftover_files(temp_dir)) == 3

    body = prepared.body
    await body.__anext__()
    await prepared.close()
    assert leftover_files(temp_dir) == []


@pytest.mark.asyncio
async def test_close_without_iterating_releases_stream(temp_dir):
    provider = FakeStreamSourceProvider()
    provider.payloads["18"] = b"x" * 400
    orchestrator = DownloadOrchestrator(make_config(temp_dir, "streaming"), provider, FakeMediaRunner())

    prepared = await orchestrator.prepare(make_request())
    await prepared.close()
    assert provider.handles[0].closed
    # Idempotent
    await prepared.close()


@pytest.mark.asyncio
async def test_streaming_merge_falls_back_to_files(temp_dir):
    provider = FakeStreamSourceProvider()
    runner = FakeMediaRunner()
    runner.supports_extra_channels = False
    orchestrator = DownloadOrchestrator(make_config(temp_dir, "streaming"), provider, runner)

    prepared = await orchestrator.prepare(make_request(videoItag="136", audioItag="140"))
    await collect(prepared.body)
    await prepared.close()
    assert runner.calls[0]["inputs"] == {"video": "FileSource", "audio": "FileSource"}
    assert runner.calls[0]["output"] == "PipeSink"
    assert leftover_files(temp_dir) == []


@pytest.mark.asyncio
async def test_buffered_deadline(temp_dir):
    provider = FakeStreamSourceProvider()
    provider.payloads["18"] = b"x" * 40
    provider.delays["18"] = 0.1
    settings = make_config(temp_dir, "buffered", timeout=0.2)
    orchestrator = DownloadOrchestrator(settings, provider, FakeMediaRunner())

    with pytest.raises(DeadlineExceeded):
        await orchestrator.prepare(make_request())
    assert leftover_files(temp_dir) == []


@pytest.mark.asyncio
async def test_gather_or_cancel_cancels_sibling():
    cancelled = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    async def failing():
        await asyncio.sleep(0)
        raise SourceUnavailable("audio fetch failed")

    with pytest.raises(SourceUnavailable):
        await gather_or_cancel(slow(), failing(), deadline=Deadline(5))
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_gather_or_cancel_deadline():
    with pytest.raises(DeadlineExceeded):
        await gather_or_cancel(asyncio.sleep(10), deadline=Deadline(0.05))


@pytest.mark.asyncio
async def test_gather_or_cancel_results():
    async def value(n):
        await asyncio.sleep(0)
        return n

    assert await gather_or_cancel(value(1), value(2), deadline=Deadline(5)) == [1, 2]


@pytest.mark.asyncio
async def test_primed_stream_closes_rest():
    closed = []

    async def rest():
        try:
            yield b"b"
        finally:
            closed.append(True)

    stream = PrimedStream(b"a", rest())
    assert await stream.__anext__() == b"a"
    assert await stream.__anext__() == b"b"
    await stream.aclose()
    assert closed == [True]


def test_temp_dir_created_on_demand(tmp_path):
    from ytmux.services.artifacts import ArtifactScope

    target = tmp_path / "nested" / "dir"
    scope = ArtifactScope(str(target))
    artifact = scope.allocate("video", "mp4")
    assert os.path.dirname(artifact.path) == str(target)
    assert os.path.isdir(target)
