"""Core helpers shared by the Scrapi X harvesting pipeline."""
from __future__ import annotations

import logging
import re
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import requests
from playwright.async_api import Error as PlaywrightError

from .errors import MalformedPostUrlError, RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)
BASE_URL = "https://x.com"
POST_HOSTS = {"x.com", "www.x.com", "twitter.com", "www.twitter.com", "mobile.twitter.com"}

POST_SELECTOR = 'article[data-testid="tweet"]'
VIDEO_PLAYER_SELECTOR = 'article[data-testid="tweet"] div[data-testid="videoPlayer"]'

MEDIA_IMAGE_MARKER = "/media/"
EXCLUDED_IMAGE_MARKERS = ("profile_images", "profile_banners")

# Non-essential endpoints that only add request volume during harvesting.
BLOCKED_ENDPOINTS = (
    "**/i/api/fleets/**",
    "**/i/api/2/notifications/**",
    "**/i/api/1.1/notifications/**",
    "**/i/api/2/badge_count.json",
    "**/i/api/graphql/*/HomeLatestTimeline*",
    "**/i/api/graphql/*/HomeTimeline*",
    "**/i/api/graphql/*/UserActions*",
    "**/i/api/graphql/*/ProfileUsersPod*",
    "**/i/api/graphql/*/Viewer*",
    "**/i/api/graphql/*/isEligibleForAnalyticsUpsellQuery*",
    "**/i/api/graphql/*/Favoriters*",
    "**/i/api/graphql/*/Retweeters*",
    "**/i/api/1.1/keyregistry/register*",
    "**/i/api/1.1/jot/client_event.json",
    "**/i/api/1.1/statuses/update.json",
    "**/i/api/2/guide.json",
    "**/i/api/1.1/geo/**",
)

_STATUS_PATH_RE = re.compile(r"^/([^/]+)/status/(\d+)")


@dataclass(slots=True)
class HarvestOptions:
    """Configuration shared by discovery, extraction and batch routines."""

    output_root: Path
    max_posts: int | None = None
    max_links: int | None = None
    download_content: bool = True
    download_video: bool = True
    delay: float = 5.0
    scroll_settle: float = 1.5
    capture_window: float = 15.0
    navigation_timeout: float = 60.0
    selector_timeout: float = 30.0
    initial_wait_timeout: float = 15.0
    initial_wait_retries: int = 5
    initial_retry_delay: float = 2.0
    reply_expand_attempts: int = 3
    ffmpeg_path: str = "ffmpeg"
    block_requests: bool = True

    def __post_init__(self) -> None:
        self.output_root = Path(self.output_root)
        if self.max_posts is not None and self.max_posts <= 0:
            self.max_posts = None
        if self.max_links is not None and self.max_links <= 0:
            self.max_links = None
        self.delay = max(float(self.delay), 0.0)
        self.scroll_settle = max(float(self.scroll_settle), 0.0)
        self.capture_window = max(float(self.capture_window), 0.0)
        self.initial_retry_delay = max(float(self.initial_retry_delay), 0.0)
        if self.navigation_timeout <= 0 or self.selector_timeout <= 0 or self.initial_wait_timeout <= 0:
            raise ValueError("Timeouts must be positive")
        if self.initial_wait_retries < 1:
            raise ValueError("initial_wait_retries must be at least 1")
        self.reply_expand_attempts = max(int(self.reply_expand_attempts), 0)
        if not self.ffmpeg_path:
            raise ValueError("ffmpeg_path must not be empty")


@dataclass(frozen=True, slots=True)
class PostRef:
    """Identity of one post: the author handle and the numeric status id."""

    author_id: str
    post_id: str

    @property
    def url(self) -> str:
        return f"{BASE_URL}/{self.author_id}/status/{self.post_id}"


def parse_post_url(url: str) -> PostRef:
    """Split a post URL (absolute or a ``/user/status/id`` href) into its identity."""
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme or parsed.netloc:
        if parsed.scheme not in {"http", "https"} or parsed.netloc.lower() not in POST_HOSTS:
            raise MalformedPostUrlError(url)
    match = _STATUS_PATH_RE.match(parsed.path or "")
    if not match:
        raise MalformedPostUrlError(url)
    return PostRef(author_id=match.group(1), post_id=match.group(2))


def absolute_post_url(href: str) -> str:
    if href.startswith("/"):
        return f"{BASE_URL}{href}"
    return href


@dataclass(frozen=True, slots=True)
class PostPaths:
    """On-disk locations of every artifact a post can produce."""

    author_dir: Path
    post_id: str

    @classmethod
    def for_post(cls, output_root: Path, ref: PostRef) -> "PostPaths":
        return cls(author_dir=Path(output_root) / ref.author_id, post_id=ref.post_id)

    @property
    def text(self) -> Path:
        return self.author_dir / f"{self.post_id}.txt"

    def image(self, index: int, extension: str) -> Path:
        return self.author_dir / f"{self.post_id}-{index}.{extension}"

    @property
    def video(self) -> Path:
        return self.author_dir / f"{self.post_id}.mp4"

    @property
    def video_info(self) -> Path:
        return self.author_dir / f"{self.post_id}-video-info.txt"

    @property
    def video_error(self) -> Path:
        return self.author_dir / f"{self.post_id}-video-error.txt"

    @property
    def video_player(self) -> Path:
        return self.author_dir / f"{self.post_id}-video-player.png"

    @property
    def rate_limited(self) -> Path:
        return self.author_dir / f"{self.post_id}-rate-limited.txt"

    @property
    def temp_dir(self) -> Path:
        return self.author_dir / f"{self.post_id}-temp"

    @property
    def status_record(self) -> Path:
        return self.author_dir / ".status" / f"{self.post_id}.json"

    def ensure_dir(self) -> Path:
        self.author_dir.mkdir(parents=True, exist_ok=True)
        return self.author_dir


def build_session(user_agent: str, verify: bool) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": user_agent,
            "Accept": "image/avif,image/webp,image/*,video/*,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.8",
            "Referer": f"{BASE_URL}/",
            "Connection": "keep-alive",
        }
    )
    session.verify = verify
    return session


def download_file(session: requests.Session, url: str, dest_path: Path) -> Path | None:
    """Stream ``url`` into ``dest_path``; returns ``None`` (and removes leftovers) on failure."""
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(session.get(url, stream=True, timeout=60)) as response:
            response.raise_for_status()
            with dest_path.open("wb") as fh:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        fh.write(chunk)
        logger.debug("Downloaded %s -> %s", url, dest_path)
        return dest_path
    except requests.exceptions.RequestException as exc:
        logger.warning("Failed to download %s: %s", url, exc)
    except OSError as exc:
        logger.warning("Failed to write %s: %s", dest_path, exc)
    dest_path.unlink(missing_ok=True)
    return None


def image_extension(url: str) -> str:
    """Choose the saved extension from hints in the URL (``format=`` or a suffix)."""
    parsed = urlparse(url)
    fmt = (parse_qs(parsed.query).get("format") or [""])[0].lower()
    path = parsed.path.lower()
    if fmt == "png" or path.endswith(".png"):
        return "png"
    if fmt == "gif" or path.endswith(".gif"):
        return "gif"
    return "jpg"


def normalize_image_url(url: str) -> str:
    parsed = urlparse(url)
    params = parse_qs(parsed.query, keep_blank_values=True)
    if "name" not in params:
        return url
    params["name"] = ["orig"]
    query = urlencode({key: values[0] for key, values in params.items()})
    return urlunparse(parsed._replace(query=query))


def filter_media_image_urls(urls: Iterable[Any]) -> list[str]:
    """Keep post media images only, dropping avatars, banners and duplicates."""
    seen: set[str] = set()
    result: list[str] = []
    for raw in urls:
        if not raw:
            continue
        url = str(raw).strip()
        if MEDIA_IMAGE_MARKER not in url:
            continue
        if any(marker in url for marker in EXCLUDED_IMAGE_MARKERS):
            continue
        url = normalize_image_url(url)
        if url in seen:
            continue
        seen.add(url)
        result.append(url)
    return result


def save_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def download_images(session: requests.Session, urls: list[str], paths: PostPaths) -> list[Path]:
    saved: list[Path] = []
    total = len(urls)
    for index, url in enumerate(urls, start=1):
        dest = paths.image(index, image_extension(url))
        logger.info("Downloading image %d/%d for post %s", index, total, paths.post_id)
        result = download_file(session, url, dest)
        if result is not None:
            saved.append(result)
    return saved


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        if response is not None and response.status_code == 429:
            return True
    message = str(exc).lower()
    return "429" in message or "too many requests" in message or "rate limit" in message


async def install_request_blocking(page: Any, patterns: Iterable[str] = BLOCKED_ENDPOINTS) -> None:
    async def _abort(route: Any) -> None:
        url = route.request.url
        logger.debug("Blocked non-essential request: %s", url[:100])
        await route.abort()

    for pattern in patterns:
        await page.route(pattern, _abort)
    logger.info("Request blocking set up for non-essential endpoints")


async def safe_navigate(page: Any, url: str, description: str, options: HarvestOptions) -> bool:
    """Navigate and wait for the page body; timeouts degrade to ``False``.

    A 429 on the document is only logged; waiting it out belongs to the
    page's :class:`~scrapi_x.ratelimit.RateLimitMonitor`. A navigation error that
    reports a rate limit is raised as :class:`RateLimitedError`.
    """
    logger.info("Navigating to %s (%s)", url, description)
    try:
        response = await page.goto(
            url,
            wait_until="domcontentloaded",
            timeout=options.navigation_timeout * 1000,
        )
        if response is not None and response.status == 429:
            logger.warning("HTTP 429 while loading %s; the rate-limit monitor decides how long to wait", description)
        await page.wait_for_selector(
            "body",
            state="visible",
            timeout=options.selector_timeout * 1000,
        )
    except PlaywrightError as exc:
        if is_rate_limit_error(exc):
            raise RateLimitedError(url) from exc
        logger.warning("Navigation warning for %s: %s; continuing with current page state", description, exc)
        return False
    logger.info("Loaded %s", description)
    return True


__all__ = [
    "BASE_URL",
    "BLOCKED_ENDPOINTS",
    "DEFAULT_USER_AGENT",
    "HarvestOptions",
    "POST_SELECTOR",
    "PostPaths",
    "PostRef",
    "VIDEO_PLAYER_SELECTOR",
    "absolute_post_url",
    "build_session",
    "download_file",
    "download_images",
    "filter_media_image_urls",
    "image_extension",
    "install_request_blocking",
    "is_rate_limit_error",
    "normalize_image_url",
    "parse_post_url",
    "safe_navigate",
    "save_text",
]
