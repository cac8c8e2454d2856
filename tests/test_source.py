import asyncio
import json

import pytest

from conftest import sample_source
from ytmux.config.settings import Config, SourceConfig
from ytmux.core.deadline import Deadline
from ytmux.core.errors import DeadlineExceeded, SourceUnavailable
from ytmux.services.format import FormatMenu, bitrate_tier, quality_number
from ytmux.services.source import StreamSourceProvider, parse_source_info, parse_stream
from ytmux.services.ytdlp import CompletedProcess, SubprocessExecutor, YTDLPCommandBuilder

URL = "https://www.youtube.com/watch?v=abc12345678"

YTDLP_INFO = {
    "id": "abc12345678",
    "title": "My Clip",
    "thumbnail": "https://i.ytimg.com/vi/abc12345678/maxresdefault.jpg",
    "is_live": False,
    "formats": [
        {"format_id": "sb0", "ext": "mhtml", "vcodec": "none", "acodec": "none", "format_note": "storyboard"},
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2", "abr": 129.478,
         "format_note": "medium", "protocol": "https"},
        {"format_id": "18", "ext": "mp4", "vcodec": "avc1.42001E", "acodec": "mp4a.40.2", "height": 360,
         "fps": 30, "tbr": 503.2, "format_note": "360p", "protocol": "https"},
        {"format_id": "298", "ext": "mp4", "vcodec": "avc1.4d4020", "acodec": "none", "height": 720,
         "fps": 60, "tbr": 3100.0, "format_note": "", "protocol": "https"},
        {"format_id": "96", "ext": "mp4", "vcodec": "avc1.4d401f", "acodec": "mp4a.40.2", "height": 1080,
         "fps": 30, "tbr": 4500.0, "format_note": "1080p", "protocol": "m3u8_native"},
    ],
}


def test_parse_source_info():
    source = parse_source_info(YTDLP_INFO)
    assert source.video_id == "abc12345678"
    assert source.title == "My Clip"
    assert not source.is_live
    # Storyboards carry no media
    assert [s.itag for s in source.streams] == ["140", "18", "298", "96"]

    audio = source.find("140")
    assert audio.has_audio and not audio.has_video
    assert audio.vcodec is None
    assert audio.quality_label == "129kbps"
    assert audio.bitrate == pytest.approx(129.478)

    muxed = source.find("18")
    assert muxed.has_audio and muxed.has_video
    assert muxed.quality_label == "360p"

    assert source.find("298").quality_label == "720p60"
    assert source.find("nope") is None


def test_parse_stream_skips_codecless():
    assert parse_stream({"format_id": "sb1", "vcodec": "none", "acodec": "none"}) is None


def test_parse_source_info_without_formats():
    source = parse_source_info({"id": "abc12345678"})
    assert source.title == "Unknown"
    assert source.streams == []


def test_info_command():
    cmd = YTDLPCommandBuilder(SourceConfig(ytdlp_path="yt-dlp")).build_info_command(URL)
    assert cmd[:3] == ["yt-dlp", "--dump-json", "--skip-download"]
    assert "--no-playlist" in cmd
    assert cmd[cmd.index("--match-filter") + 1] == "!is_live"
    assert cmd[-2:] == ["--", URL]


def test_stream_command_with_cookie():
    settings = SourceConfig(ytdlp_path="yt-dlp", cookie="SID=secret")
    cmd = YTDLPCommandBuilder(settings).build_stream_command(URL, "140")
    assert cmd[:5] == ["yt-dlp", "-f", "140", "-o", "-"]
    assert cmd[cmd.index("--add-header") + 1] == "Cookie:SID=secret"
    assert "--quiet" in cmd
    assert cmd[-2:] == ["--", URL]


def test_stream_command_without_cookie():
    cmd = YTDLPCommandBuilder(SourceConfig(cookie=None)).build_stream_command(URL, "18")
    assert "--add-header" not in cmd


@pytest.mark.parametrize("label, expected", [("720p", 720), ("720p60", 720), ("1080p", 1080), ("", 0), ("medium", 0)])
def test_quality_number(label, expected):
    assert quality_number(label) == expected


@pytest.mark.parametrize("bitrate, expected", [(129.478, 128), (48.8, 48), (160.1, 160), (None, None), (0, None)])
def test_bitrate_tier(bitrate, expected):
    assert bitrate_tier(bitrate) == expected


def test_menu_skips_non_direct_protocols():
    source = parse_source_info(YTDLP_INFO)
    menu = FormatMenu(SourceConfig(max_height=1080))
    videos = menu.video_options(source.streams, "140")
    # 96 is HLS only
    assert [v.itag for v in videos] == ["298", "18"]


def test_menu_without_audio_tier_drops_video_only():
    source = sample_source()
    menu = FormatMenu(SourceConfig(audio_bitrate_tier=256))
    assert menu.audio_options(source.streams) == []
    videos = menu.video_options(source.streams, None)
    assert [v.itag for v in videos] == ["22", "18"]
    assert all(v.has_audio for v in videos)


def test_menu_serializes_camel_case():
    source = sample_source()
    menu = FormatMenu(SourceConfig())
    option = menu.video_options(source.streams, "140")[0]
    assert option.model_dump(by_alias=True) == {
        "itag": "136",
        "quality": "720p",
        "container": "mp4",
        "hasAudio": False,
        "audioItag": "140",
        "bitrate": 1500.0,
    }


@pytest.fixture
def ytdlp_result(monkeypatch):
    """Replace the yt-dlp subprocess with a canned result"""
    calls = []
    outcome = {"result": CompletedProcess(0, json.dumps(YTDLP_INFO).encode(), b"")}

    async def fake_run(cmd, timeout, capture_stderr=True):
        calls.append((cmd, timeout))
        result = outcome["result"]
        if isinstance(result, BaseException):
            raise result
        return result

    monkeypatch.setattr(SubprocessExecutor, "run", staticmethod(fake_run))
    outcome["calls"] = calls
    return outcome


@pytest.mark.asyncio
async def test_describe(ytdlp_result):
    provider = StreamSourceProvider(Config())
    source = await provider.describe(URL, Deadline(5))
    assert source.title == "My Clip"
    assert source.find("140") is not None

    cmd, timeout = ytdlp_result["calls"][0]
    assert "--dump-json" in cmd
    # Clamped by the deadline
    assert timeout <= 5


@pytest.mark.asyncio
@pytest.mark.parametrize("result, error", [
    (CompletedProcess(1, b"", b"ERROR: Video unavailable"), SourceUnavailable),
    (CompletedProcess(0, b"", b""), SourceUnavailable),
    (CompletedProcess(0, b"not json", b""), SourceUnavailable),
    (asyncio.TimeoutError(), DeadlineExceeded),
    (FileNotFoundError("yt-dlp"), SourceUnavailable),
])
async def test_describe_failures(ytdlp_result, result, error):
    ytdlp_result["result"] = result
    with pytest.raises(error):
        await StreamSourceProvider(Config()).describe(URL)


@pytest.mark.asyncio
async def test_describe_rejects_live(ytdlp_result):
    live = dict(YTDLP_INFO, is_live=True)
    ytdlp_result["result"] = CompletedProcess(0, json.dumps(live).encode(), b"")
    with pytest.raises(SourceUnavailable, match="Live"):
        await StreamSourceProvider(Config()).describe(URL)


@pytest.mark.asyncio
async def test_open_resolves_itag(ytdlp_result):
    provider = StreamSourceProvider(Config())
    handle = await provider.open(URL, "18")
    assert handle.descriptor.itag == "18"

    with pytest.raises(SourceUnavailable):
        await provider.open(URL, "999")
