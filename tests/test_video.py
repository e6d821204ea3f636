from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

import pytest
from fakes import FakeHttpSession, FakePage, FakeRequest

from scrapi_x.core import VIDEO_PLAYER_SELECTOR, HarvestOptions, PostPaths, PostRef
from scrapi_x.errors import ExternalToolError
from scrapi_x.video import (
    UNKNOWN_QUALITY,
    MediaKind,
    VideoOutcome,
    VideoReconstructor,
    build_mux_command,
    classify_segment,
    group_by_quality,
    order_segments,
    quality_key,
    run_muxer,
    select_audio_quality,
    select_video_quality,
)

VIDEO_BASE = "https://video.twimg.com/amplify_video/1/vid/avc1/0/3000"
AUDIO_BASE = "https://video.twimg.com/amplify_video/1/aud/mp4a/0/3000/128000"


def test_quality_key_reads_resolution_and_bitrate() -> None:
    assert quality_key(f"{VIDEO_BASE}/1280x720/seg1.m4s") == "1280x720"
    assert quality_key(f"{AUDIO_BASE}/seg1.m4s") == "128kbps"
    assert quality_key("https://video.twimg.com/amplify_video/1/vid/avc1/seg.m4s") == UNKNOWN_QUALITY


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        (f"{VIDEO_BASE}/1280x720/seg1.m4s", MediaKind.VIDEO),
        (f"{VIDEO_BASE}/1280x720/init.mp4", MediaKind.VIDEO),
        (f"{AUDIO_BASE}/seg1.m4s", MediaKind.AUDIO),
        (f"{VIDEO_BASE}/1280x720/playlist.m3u8", None),
        ("https://video.twimg.com/amplify_video/1/pl/seg1.m4s", None),
        ("https://x.com/i/api/graphql/abc/TweetDetail", None),
    ],
)
def test_classify_segment(url: str, expected: MediaKind | None) -> None:
    assert classify_segment(url) is expected


def test_group_and_select_prefers_largest_resolution() -> None:
    urls = [
        f"{VIDEO_BASE}/480x270/a.m4s",
        f"{VIDEO_BASE}/1280x720/a.m4s",
        f"{VIDEO_BASE}/1280x720/a.m4s",
        f"{VIDEO_BASE}/1280x720/b.m4s",
        "https://video.twimg.com/amplify_video/1/vid/avc1/odd.m4s",
    ]

    groups = group_by_quality(urls)

    assert list(groups) == ["480x270", "1280x720", UNKNOWN_QUALITY]
    assert groups["1280x720"] == [f"{VIDEO_BASE}/1280x720/a.m4s", f"{VIDEO_BASE}/1280x720/b.m4s"]
    assert select_video_quality(groups) == "1280x720"
    assert select_video_quality({UNKNOWN_QUALITY: ["x"]}) == UNKNOWN_QUALITY
    assert select_video_quality({}) is None
    assert select_audio_quality({"128kbps": ["a"], "64kbps": ["b"]}) == "128kbps"
    assert select_audio_quality({}) is None


def test_order_segments_puts_init_fragment_first() -> None:
    urls = [f"{VIDEO_BASE}/720x720/1.m4s", f"{VIDEO_BASE}/720x720/init.mp4", f"{VIDEO_BASE}/720x720/2.m4s"]

    assert order_segments(urls) == [urls[1], urls[0], urls[2]]


def test_build_mux_command_with_and_without_audio(tmp_path: Path) -> None:
    video_list = tmp_path / "video_list.txt"
    audio_list = tmp_path / "audio_list.txt"
    output = tmp_path / "1.mp4"

    with_audio = build_mux_command("ffmpeg", video_list, audio_list, output)
    video_only = build_mux_command("ffmpeg", video_list, None, output)

    assert with_audio == [
        "ffmpeg", "-y",
        "-f", "concat", "-safe", "0", "-i", str(video_list),
        "-f", "concat", "-safe", "0", "-i", str(audio_list),
        "-c", "copy", str(output),
    ]
    assert video_only == ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", str(video_list), "-c", "copy", str(output)]


def test_run_muxer_wraps_tool_failures() -> None:
    def failing_runner(command, **kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="line one\nInvalid data found\n")

    def missing_runner(command, **kwargs):
        raise FileNotFoundError("ffmpeg")

    with pytest.raises(ExternalToolError) as excinfo:
        run_muxer(["ffmpeg"], failing_runner)
    assert excinfo.value.returncode == 1
    assert "Invalid data found" in str(excinfo.value)

    with pytest.raises(ExternalToolError):
        run_muxer(["ffmpeg"], missing_runner)


def _page_with_segments(urls: list[str]) -> FakePage:
    page = FakePage(present={VIDEO_PLAYER_SELECTOR})

    def play() -> None:
        for url in urls:
            page.emit("request", FakeRequest(url))
        page.emit("request", FakeRequest("https://x.com/i/api/graphql/abc/TweetDetail"))

    page.on_click[VIDEO_PLAYER_SELECTOR] = play
    return page


def _paths(tmp_path: Path) -> PostPaths:
    return PostPaths.for_post(tmp_path, PostRef(author_id="someone", post_id="9"))


def test_reconstruct_downloads_best_rendition_and_muxes(tmp_path: Path) -> None:
    captured = [
        f"{VIDEO_BASE}/480x270/1.m4s",
        f"{VIDEO_BASE}/1280x720/1.m4s",
        f"{VIDEO_BASE}/1280x720/init.mp4",
        f"{VIDEO_BASE}/1280x720/2.m4s",
        f"{AUDIO_BASE}/1.m4s",
    ]
    page = _page_with_segments(captured)
    session = FakeHttpSession()
    options = HarvestOptions(output_root=tmp_path, capture_window=0)
    paths = _paths(tmp_path)
    manifests: dict[str, str] = {}
    commands: list[list[str]] = []

    def runner(command, **kwargs):
        commands.append(command)
        for name in ("video_list.txt", "audio_list.txt"):
            manifests[name] = (paths.temp_dir / name).read_text(encoding="utf-8")
        Path(command[-1]).write_bytes(b"mp4")
        return subprocess.CompletedProcess(command, 0)

    outcome = asyncio.run(VideoReconstructor(session, options, runner=runner).reconstruct(page, paths))

    assert outcome is VideoOutcome.SAVED
    assert paths.video.read_bytes() == b"mp4"
    assert not paths.temp_dir.exists()
    assert page.listeners["request"] == []
    assert session.calls == [
        f"{VIDEO_BASE}/1280x720/init.mp4",
        f"{VIDEO_BASE}/1280x720/1.m4s",
        f"{VIDEO_BASE}/1280x720/2.m4s",
        f"{AUDIO_BASE}/1.m4s",
    ]
    video_lines = manifests["video_list.txt"].splitlines()
    assert [line.rsplit("/", 1)[-1] for line in video_lines] == [
        "video_00000.m4s'",
        "video_00001.m4s'",
        "video_00002.m4s'",
    ]
    assert all(line.startswith("file '/") for line in video_lines)
    assert manifests["audio_list.txt"].count("file '") == 1
    assert commands[0][0] == "ffmpeg"
    assert commands[0][-1] == str(paths.video)


def test_reconstruct_without_segments_reports_none(tmp_path: Path) -> None:
    page = _page_with_segments([])
    options = HarvestOptions(output_root=tmp_path, capture_window=0)

    outcome = asyncio.run(VideoReconstructor(FakeHttpSession(), options).reconstruct(page, _paths(tmp_path)))

    assert outcome is VideoOutcome.NO_SEGMENTS
    assert page.clicked == [VIDEO_PLAYER_SELECTOR]


def test_reconstruct_failure_keeps_segment_references(tmp_path: Path) -> None:
    captured = [f"{VIDEO_BASE}/1280x720/1.m4s", f"{AUDIO_BASE}/1.m4s"]
    page = _page_with_segments(captured)
    options = HarvestOptions(output_root=tmp_path, capture_window=0)
    paths = _paths(tmp_path)

    def runner(command, **kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="Invalid data found when processing input")

    outcome = asyncio.run(VideoReconstructor(FakeHttpSession(), options, runner=runner).reconstruct(page, paths))

    assert outcome is VideoOutcome.FAILED
    assert not paths.video.exists()
    assert not paths.temp_dir.exists()
    report = paths.video_error.read_text(encoding="utf-8")
    assert report.startswith("Failed to reconstruct video:")
    assert captured[0] in report
    assert captured[1] in report


def test_reconstruct_failed_segment_download_is_reported(tmp_path: Path) -> None:
    captured = [f"{VIDEO_BASE}/1280x720/1.m4s"]
    page = _page_with_segments(captured)
    options = HarvestOptions(output_root=tmp_path, capture_window=0)
    paths = _paths(tmp_path)
    runner_calls: list[list[str]] = []

    outcome = asyncio.run(
        VideoReconstructor(
            FakeHttpSession(failing=set(captured)), options, runner=lambda command, **kw: runner_calls.append(command)
        ).reconstruct(page, paths)
    )

    assert outcome is VideoOutcome.FAILED
    assert runner_calls == []
    assert paths.video_error.exists()
