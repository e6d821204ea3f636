"""Reconstruction of adaptively streamed videos from captured segment requests."""
from __future__ import annotations

import asyncio
import enum
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urlparse

import requests
from playwright.async_api import Error as PlaywrightError

from .core import VIDEO_PLAYER_SELECTOR, HarvestOptions, PostPaths, download_file, save_text
from .errors import ExternalToolError

logger = logging.getLogger(__name__)

UNKNOWN_QUALITY = "unknown"
SEGMENT_SUFFIXES = (".m4s", ".mp4")
VIDEO_PATH_MARKER = "vid"
AUDIO_PATH_MARKER = "aud"

_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")
_BITRATE_RE = re.compile(r"^(\d+)000$")


class MediaKind(str, enum.Enum):
    VIDEO = "video"
    AUDIO = "audio"


@dataclass(frozen=True, slots=True)
class StreamSegment:
    url: str
    kind: MediaKind
    quality: str


def _path_segments(url: str) -> list[str]:
    return [segment for segment in (urlparse(url).path or "").split("/") if segment]


def classify_segment(url: str) -> MediaKind | None:
    """Return the media kind of a stream fragment URL, or ``None`` for other traffic."""
    path = (urlparse(url).path or "").lower()
    if not path.endswith(SEGMENT_SUFFIXES):
        return None
    segments = _path_segments(url.lower())
    if VIDEO_PATH_MARKER in segments:
        return MediaKind.VIDEO
    if AUDIO_PATH_MARKER in segments:
        return MediaKind.AUDIO
    return None


def quality_key(url: str) -> str:
    """Derive the quality bucket of a segment: ``WxH`` for video, ``NNNkbps`` for audio."""
    segments = _path_segments(url)
    lowered = [segment.lower() for segment in segments]
    for marker in (VIDEO_PATH_MARKER, AUDIO_PATH_MARKER):
        if marker in lowered:
            segments = segments[lowered.index(marker) + 1:]
            break
    for segment in segments:
        if _RESOLUTION_RE.match(segment):
            return segment
    for segment in reversed(segments):
        match = _BITRATE_RE.match(segment)
        if match:
            return f"{match.group(1)}kbps"
    return UNKNOWN_QUALITY


def group_by_quality(urls: Iterable[str]) -> dict[str, list[str]]:
    """Partition segment URLs by quality key, keeping first-seen order and dropping repeats."""
    groups: dict[str, list[str]] = {}
    seen: set[str] = set()
    for url in urls:
        if url in seen:
            continue
        seen.add(url)
        groups.setdefault(quality_key(url), []).append(url)
    return groups


def resolution_area(key: str) -> int | None:
    match = _RESOLUTION_RE.match(key)
    if not match:
        return None
    return int(match.group(1)) * int(match.group(2))


def select_video_quality(groups: dict[str, list[str]]) -> str | None:
    """Pick the group with the largest pixel area; unparseable keys rank last."""
    if not groups:
        return None

    def rank(key: str) -> tuple[int, int]:
        area = resolution_area(key)
        return (1, area) if area is not None else (0, 0)

    return max(groups, key=rank)


def select_audio_quality(groups: dict[str, list[str]]) -> str | None:
    return next(iter(groups), None)


def order_segments(urls: list[str]) -> list[str]:
    """Move initialisation fragments ahead of media fragments, otherwise keep capture order."""
    return sorted(urls, key=lambda url: 1 if (urlparse(url).path or "").lower().endswith(".m4s") else 0)


class SegmentCollector:
    """Observes page requests and records stream fragments by media kind."""

    def __init__(self) -> None:
        self.video_urls: list[str] = []
        self.audio_urls: list[str] = []
        self._page: Any = None
        self._listener = self.handle_request

    def handle_request(self, request: Any) -> None:
        url = request.url
        kind = classify_segment(url)
        if kind is MediaKind.VIDEO:
            logger.debug("Video segment: %s", url)
            self.video_urls.append(url)
        elif kind is MediaKind.AUDIO:
            logger.debug("Audio segment: %s", url)
            self.audio_urls.append(url)

    def attach(self, page: Any) -> None:
        self._page = page
        page.on("request", self._listener)

    def detach(self) -> None:
        if self._page is not None:
            self._page.remove_listener("request", self._listener)
            self._page = None

    def segments(self) -> list[StreamSegment]:
        captured = [(url, MediaKind.VIDEO) for url in self.video_urls]
        captured += [(url, MediaKind.AUDIO) for url in self.audio_urls]
        return [StreamSegment(url=url, kind=kind, quality=quality_key(url)) for url, kind in captured]


class VideoOutcome(str, enum.Enum):
    SAVED = "saved"
    NO_SEGMENTS = "no-segments"
    FAILED = "failed"


def write_concat_manifest(path: Path, files: list[Path]) -> Path:
    lines = []
    for file_path in sorted(files, key=lambda item: item.name):
        escaped = str(file_path.resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    save_text(path, "\n".join(lines) + "\n")
    return path


def build_mux_command(ffmpeg_path: str, video_list: Path, audio_list: Path | None, output: Path) -> list[str]:
    command = [ffmpeg_path, "-y", "-f", "concat", "-safe", "0", "-i", str(video_list)]
    if audio_list is not None:
        command += ["-f", "concat", "-safe", "0", "-i", str(audio_list)]
    command += ["-c", "copy", str(output)]
    return command


def run_muxer(command: list[str], runner: Callable[..., Any] = subprocess.run) -> None:
    logger.info("Merging segments: %s", " ".join(command))
    try:
        runner(command, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip().splitlines()
        raise ExternalToolError(command, exc.returncode, detail[-1] if detail else "") from exc
    except OSError as exc:
        raise ExternalToolError(command, None, str(exc)) from exc


class VideoReconstructor:
    """Captures a post's stream fragments and muxes the best rendition into one file."""

    def __init__(
        self,
        session: requests.Session,
        options: HarvestOptions,
        *,
        runner: Callable[..., Any] = subprocess.run,
    ) -> None:
        self.session = session
        self.options = options
        self.runner = runner

    async def capture(self, page: Any) -> SegmentCollector:
        collector = SegmentCollector()
        collector.attach(page)
        try:
            try:
                await page.click(VIDEO_PLAYER_SELECTOR, timeout=self.options.selector_timeout * 1000)
                logger.info("Video player clicked to trigger playback")
            except PlaywrightError as exc:
                logger.warning("Could not start playback: %s", exc)
            logger.info("Waiting %.0f seconds to capture video segments", self.options.capture_window)
            await asyncio.sleep(self.options.capture_window)
        finally:
            collector.detach()
        logger.info(
            "Captured %d video segments and %d audio segments",
            len(collector.video_urls),
            len(collector.audio_urls),
        )
        return collector

    def _download_group(self, urls: list[str], temp_dir: Path, prefix: str) -> list[Path]:
        files: list[Path] = []
        ordered = order_segments(urls)
        for index, url in enumerate(ordered):
            dest = temp_dir / f"{prefix}_{index:05d}.m4s"
            logger.debug("Downloading %s segment %d/%d", prefix, index + 1, len(ordered))
            if download_file(self.session, url, dest) is None:
                raise OSError(f"Failed to download {prefix} segment {url}")
            files.append(dest)
        return files

    def _write_failure_report(self, paths: PostPaths, error: Exception, video: list[str], audio: list[str]) -> None:
        lines = [f"Failed to reconstruct video: {error}", "", "Video segments:"]
        lines += video or ["(none)"]
        lines += ["", "Audio segments:"]
        lines += audio or ["(none)"]
        save_text(paths.video_error, "\n".join(lines) + "\n")
        logger.info("Saved segment references to %s for manual retry", paths.video_error)

    async def reconstruct(self, page: Any, paths: PostPaths) -> VideoOutcome:
        collector = await self.capture(page)
        if not collector.video_urls:
            return VideoOutcome.NO_SEGMENTS

        video_groups = group_by_quality(collector.video_urls)
        audio_groups = group_by_quality(collector.audio_urls)
        for quality, urls in video_groups.items():
            logger.info("Available video quality %s: %d segments", quality, len(urls))
        video_quality = select_video_quality(video_groups)
        audio_quality = select_audio_quality(audio_groups)
        video_urls = video_groups[video_quality] if video_quality else []
        audio_urls = audio_groups[audio_quality] if audio_quality else []
        logger.info("Selected video quality %s, audio quality %s", video_quality, audio_quality or "none")

        temp_dir = paths.temp_dir
        try:
            temp_dir.mkdir(parents=True, exist_ok=True)
            video_files = self._download_group(video_urls, temp_dir, "video")
            audio_files = self._download_group(audio_urls, temp_dir, "audio")
            video_list = write_concat_manifest(temp_dir / "video_list.txt", video_files)
            audio_list = write_concat_manifest(temp_dir / "audio_list.txt", audio_files) if audio_files else None
            run_muxer(
                build_mux_command(self.options.ffmpeg_path, video_list, audio_list, paths.video),
                self.runner,
            )
        except (ExternalToolError, OSError) as exc:
            logger.error("Video reconstruction failed for post %s: %s", paths.post_id, exc)
            self._write_failure_report(paths, exc, video_urls, audio_urls)
            return VideoOutcome.FAILED
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        logger.info("Video saved to %s", paths.video)
        return VideoOutcome.SAVED


__all__ = [
    "MediaKind",
    "SegmentCollector",
    "StreamSegment",
    "UNKNOWN_QUALITY",
    "VideoOutcome",
    "VideoReconstructor",
    "build_mux_command",
    "classify_segment",
    "group_by_quality",
    "order_segments",
    "quality_key",
    "resolution_area",
    "select_audio_quality",
    "select_video_quality",
]
