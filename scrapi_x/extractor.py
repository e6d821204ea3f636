"""Per-post content extraction and the sequential batch loop around it."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

import requests
from playwright.async_api import Error as PlaywrightError

from .core import (
    POST_SELECTOR,
    VIDEO_PLAYER_SELECTOR,
    HarvestOptions,
    PostPaths,
    PostRef,
    download_images,
    filter_media_image_urls,
    install_request_blocking,
    is_rate_limit_error,
    parse_post_url,
    safe_navigate,
    save_text,
)
from .errors import MalformedPostUrlError
from .ratelimit import RateLimitMonitor
from .resume import PostStatus, is_post_done, write_status
from .video import VideoOutcome, VideoReconstructor

if TYPE_CHECKING:
    from .session import BrowserSession

logger = logging.getLogger(__name__)

SHOW_MORE_REPLIES_SELECTOR = 'div[data-testid="cellInnerDiv"] [role="button"]:has-text("Show more replies")'
SCROLL_TO_BOTTOM_SCRIPT = "() => window.scrollTo(0, document.body.scrollHeight)"

THREAD_SCRIPT = """
(selector) => Array.from(document.querySelectorAll(selector)).map((article) => {
  const userName = article.querySelector('div[data-testid="User-Name"]');
  let handle = '';
  if (userName) {
    for (const link of userName.querySelectorAll('a[role="link"]')) {
      const text = (link.textContent || '').trim();
      if (text.startsWith('@')) { handle = text.slice(1); break; }
    }
    if (!handle) {
      const link = userName.querySelector('a[role="link"]');
      handle = link ? (link.getAttribute('href') || '').replace(/^\\//, '') : '';
    }
  }
  const time = article.querySelector('time');
  const permalink = time && time.closest('a') ? time.closest('a').getAttribute('href') : '';
  const text = article.querySelector('div[data-testid="tweetText"]');
  return {
    user: userName ? userName.textContent : '',
    handle: handle,
    time: time ? time.getAttribute('datetime') : '',
    permalink: permalink || '',
    text: text ? text.textContent : '',
  };
})
"""

POST_IMAGES_SCRIPT = """
([selector, postId]) => {
  const articles = Array.from(document.querySelectorAll(selector));
  const main = articles.find((article) => {
    const time = article.querySelector('time');
    const link = time ? time.closest('a') : null;
    return link && (link.getAttribute('href') || '').includes('/status/' + postId);
  }) || articles[0];
  if (!main) return [];
  return Array.from(main.querySelectorAll('img[src*="pbs.twimg.com/media/"]')).map((img) => img.src);
}
"""

ELEMENT_BOX_SCRIPT = """
(selector) => {
  const element = document.querySelector(selector);
  if (!element) return null;
  const {x, y, width, height} = element.getBoundingClientRect();
  return {x, y, width, height};
}
"""


class PostOutcome(str, enum.Enum):
    PROCESSED = "processed"
    SKIPPED_EXISTING = "skipped-existing"
    SKIPPED_ERROR = "skipped-error"
    RATE_LIMITED = "rate-limited"


def _normalize_handle(handle: Any) -> str:
    return str(handle or "").strip().lstrip("@").lower()


def pick_root_index(entries: list[dict[str, Any]], post_id: str) -> int:
    """Index of the article whose permalink is the post itself, else the first article."""
    needle = f"/status/{post_id}"
    for index, entry in enumerate(entries):
        permalink = str(entry.get("permalink") or "")
        if permalink.endswith(needle) or f"{needle}/" in permalink or f"{needle}?" in permalink:
            return index
    return 0


def collect_author_replies(entries: list[dict[str, Any]], root_index: int) -> list[dict[str, Any]]:
    """Replies following the root article that were written by the root's author."""
    if not entries:
        return []
    author = _normalize_handle(entries[root_index].get("handle"))
    if not author:
        return []
    return [
        entry
        for entry in entries[root_index + 1:]
        if _normalize_handle(entry.get("handle")) == author
    ]


def format_post_text(root: dict[str, Any], replies: list[dict[str, Any]]) -> str:
    user = (root.get("user") or "").strip() or "Unknown user"
    timestamp = root.get("time") or "Unknown time"
    body = root.get("text") or "No text content"
    content = f"User: {user}\nTime: {timestamp}\n\nContent:\n{body}\n"
    if replies:
        blocks = [
            f"--- Reply {index} ---\nTime: {reply.get('time') or ''}\nContent: {reply.get('text') or ''}"
            for index, reply in enumerate(replies, start=1)
        ]
        content += f"\n\nAuthor's Replies in Thread ({len(replies)}):\n" + "\n\n".join(blocks)
    return content


async def _expand_replies(page: Any, options: HarvestOptions) -> None:
    try:
        await page.evaluate(SCROLL_TO_BOTTOM_SCRIPT)
        await asyncio.sleep(options.scroll_settle)
        buttons = await page.query_selector_all(SHOW_MORE_REPLIES_SELECTOR)
        for button in buttons[: options.reply_expand_attempts]:
            try:
                await button.click()
            except PlaywrightError as exc:
                logger.debug("Could not click 'Show more replies': %s", exc)
            await asyncio.sleep(options.scroll_settle)
    except PlaywrightError as exc:
        logger.info("Could not load additional replies, continuing with visible ones: %s", exc)


async def extract_and_save_text(page: Any, paths: PostPaths, ref: PostRef, options: HarvestOptions) -> None:
    """Write the post text plus the author's own thread replies; errors become the file's content."""
    try:
        await page.wait_for_selector(POST_SELECTOR, timeout=options.selector_timeout * 1000)
        await _expand_replies(page, options)
        await asyncio.sleep(options.scroll_settle)
        entries = await page.evaluate(THREAD_SCRIPT, POST_SELECTOR) or []
        if not entries:
            raise LookupError("no post element rendered")
        root_index = pick_root_index(entries, ref.post_id)
        replies = collect_author_replies(entries, root_index)
        save_text(paths.text, format_post_text(entries[root_index], replies))
        logger.info("Saved post text and %d author replies to %s", len(replies), paths.text)
    except (PlaywrightError, LookupError) as exc:
        logger.error("Error extracting text for post %s: %s", ref.post_id, exc)
        save_text(paths.text, f"Failed to extract text: {exc}")


async def extract_and_download_images(
    page: Any,
    paths: PostPaths,
    ref: PostRef,
    session: requests.Session,
) -> int:
    try:
        raw_urls = await page.evaluate(POST_IMAGES_SCRIPT, [POST_SELECTOR, ref.post_id]) or []
    except PlaywrightError as exc:
        logger.error("Error collecting images for post %s: %s", ref.post_id, exc)
        return 0
    urls = filter_media_image_urls(raw_urls)
    saved = download_images(session, urls, paths)
    logger.info("Downloaded %d images for post %s", len(saved), ref.post_id)
    return len(saved)


async def save_player_screenshot(page: Any, paths: PostPaths) -> bool:
    try:
        clip = await page.evaluate(ELEMENT_BOX_SCRIPT, VIDEO_PLAYER_SELECTOR)
        if clip:
            await page.screenshot(path=str(paths.video_player), clip=clip)
        else:
            await page.screenshot(path=str(paths.video_player))
    except PlaywrightError as exc:
        logger.warning("Could not take video player screenshot: %s", exc)
        return False
    logger.info("Saved screenshot of video player to %s", paths.video_player)
    return True


async def extract_video(
    page: Any,
    paths: PostPaths,
    reconstructor: VideoReconstructor | None,
    options: HarvestOptions,
) -> VideoOutcome | None:
    """Reconstruct the post's video, leaving a placeholder when that is not possible."""
    try:
        player = await page.query_selector(VIDEO_PLAYER_SELECTOR)
        if player is None:
            logger.info("No video detected in post %s", paths.post_id)
            return None

        if reconstructor is None:
            await save_player_screenshot(page, paths)
            save_text(
                paths.video_info,
                "Video detected but video download is disabled.\n"
                "Run again with video download enabled to reconstruct it.\n",
            )
            return None

        outcome = await reconstructor.reconstruct(page, paths)
        if outcome is VideoOutcome.SAVED:
            return outcome
        await save_player_screenshot(page, paths)
        if outcome is VideoOutcome.NO_SEGMENTS:
            message = (
                "Video detected but no stream segments were captured "
                f"within {options.capture_window:.0f} seconds.\n"
            )
        else:
            message = f"Video detected but reconstruction failed; segment references are in {paths.video_error.name}.\n"
        save_text(paths.video_info, message)
        return outcome
    except (PlaywrightError, OSError) as exc:
        logger.error("Error extracting video for post %s: %s", paths.post_id, exc)
        save_text(paths.video_error, f"Failed to extract video: {exc}")
        return VideoOutcome.FAILED


def _record_rate_limit(paths: PostPaths, url: str, steps: list[str]) -> None:
    try:
        save_text(
            paths.rate_limited,
            f"Rate limited when trying to process post: {url}\nTime: {datetime.now(timezone.utc).isoformat()}",
        )
        write_status(paths, PostStatus.PARTIAL, steps + ["rate-limited"])
    except OSError as exc:
        logger.error("Could not record rate limit for post %s: %s", paths.post_id, exc)


async def process_post_content(
    page: Any,
    url: str,
    *,
    session: requests.Session,
    options: HarvestOptions,
    reconstructor: VideoReconstructor | None = None,
) -> PostOutcome:
    """Harvest one post; never raises, the outcome says what happened."""
    try:
        ref = parse_post_url(url)
    except MalformedPostUrlError as exc:
        logger.error("%s", exc)
        return PostOutcome.SKIPPED_ERROR

    paths = PostPaths.for_post(options.output_root, ref)
    if is_post_done(paths):
        return PostOutcome.SKIPPED_EXISTING

    if reconstructor is None and options.download_video:
        reconstructor = VideoReconstructor(session, options)
    elif not options.download_video:
        reconstructor = None

    logger.info("Processing post %s (author %s, id %s)", url, ref.author_id, ref.post_id)
    monitor = RateLimitMonitor(page, reload_timeout=options.navigation_timeout).attach()
    steps: list[str] = []
    try:
        paths.ensure_dir()
        write_status(paths, PostStatus.PENDING)
        await safe_navigate(page, ref.url, f"post {ref.post_id}", options)
        await monitor.wait_if_paused()

        await extract_and_save_text(page, paths, ref, options)
        steps.append("text")
        write_status(paths, PostStatus.PARTIAL, steps)
        await monitor.wait_if_paused()

        await extract_and_download_images(page, paths, ref, session)
        steps.append("images")
        write_status(paths, PostStatus.PARTIAL, steps)
        await monitor.wait_if_paused()

        await extract_video(page, paths, reconstructor, options)
        steps.append("video")
        paths.rate_limited.unlink(missing_ok=True)
        write_status(paths, PostStatus.DONE, steps)
    except Exception as exc:  # noqa: BLE001 - one post must never abort the batch
        if is_rate_limit_error(exc):
            logger.warning("Rate limited while processing %s; recording and moving on", url)
            _record_rate_limit(paths, url, steps)
            return PostOutcome.RATE_LIMITED
        logger.error("Error processing post %s: %s", url, exc)
        return PostOutcome.SKIPPED_ERROR
    finally:
        await monitor.close()

    logger.info("Completed processing post %s", url)
    return PostOutcome.PROCESSED


@dataclass(slots=True)
class BatchSummary:
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    rate_limited: int = 0

    def record(self, outcome: PostOutcome) -> None:
        if outcome is PostOutcome.PROCESSED:
            self.processed += 1
        elif outcome is PostOutcome.SKIPPED_EXISTING:
            self.skipped += 1
        elif outcome is PostOutcome.RATE_LIMITED:
            self.rate_limited += 1
        else:
            self.failed += 1

    def log(self) -> None:
        def pct(count: int) -> int:
            return int(count * 100 / self.total) if self.total else 0

        logger.info(
            "Batch complete: total=%d processed=%d (%d%%) skipped=%d (%d%%) failed=%d (%d%%) rate-limited=%d (%d%%)",
            self.total,
            self.processed,
            pct(self.processed),
            self.skipped,
            pct(self.skipped),
            self.failed,
            pct(self.failed),
            self.rate_limited,
            pct(self.rate_limited),
        )
        if self.rate_limited:
            logger.warning("Rate limits were hit; consider waiting before harvesting more posts")


async def process_posts(
    urls: Iterable[str],
    *,
    session: requests.Session,
    options: HarvestOptions,
    page: Any = None,
    browser: "BrowserSession | None" = None,
    reconstructor: VideoReconstructor | None = None,
) -> BatchSummary:
    """Process posts one at a time, pacing only after posts that were actually harvested."""
    url_list = list(urls)
    summary = BatchSummary(total=len(url_list))
    owns_page = False
    if page is None:
        if browser is None:
            raise ValueError("process_posts needs either a page or a browser session")
        page = await browser.new_page()
        owns_page = True
        if options.block_requests:
            await install_request_blocking(page)

    logger.info("Starting to process %d posts (delay %.1fs between harvested posts)", summary.total, options.delay)
    try:
        for index, url in enumerate(url_list, start=1):
            progress = f"{index}/{summary.total}"
            logger.info("[%s] Processing %s", progress, url)
            try:
                outcome = await process_post_content(
                    page,
                    url,
                    session=session,
                    options=options,
                    reconstructor=reconstructor,
                )
            except Exception as exc:  # noqa: BLE001 - keep going with the next post
                logger.error("[%s] Unexpected error for %s: %s", progress, url, exc)
                outcome = PostOutcome.SKIPPED_ERROR
            summary.record(outcome)
            logger.info("[%s] %s: %s", progress, outcome.value, url)

            if outcome is PostOutcome.PROCESSED and index < summary.total and options.delay > 0:
                logger.info("[%s] Waiting %.1f seconds before next post", progress, options.delay)
                await asyncio.sleep(options.delay)
    finally:
        if owns_page:
            await page.close()

    summary.log()
    return summary


__all__ = [
    "BatchSummary",
    "PostOutcome",
    "collect_author_replies",
    "extract_and_download_images",
    "extract_and_save_text",
    "extract_video",
    "format_post_text",
    "pick_root_index",
    "process_post_content",
    "process_posts",
]
