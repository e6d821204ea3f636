"""Timeline link discovery: scroll a profile, dedupe posts, harvest simple ones inline."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

import requests
from playwright.async_api import Error as PlaywrightError

from .core import (
    BASE_URL,
    DEFAULT_USER_AGENT,
    HarvestOptions,
    PostPaths,
    absolute_post_url,
    build_session,
    download_images,
    filter_media_image_urls,
    install_request_blocking,
    parse_post_url,
    safe_navigate,
    save_text,
)
from .errors import MalformedPostUrlError, NoContentError, RateLimitedError
from .extractor import process_posts
from .resume import PostStatus, is_post_done, write_status

if TYPE_CHECKING:
    from .session import BrowserSession

logger = logging.getLogger(__name__)

TIMELINE_ITEM_SELECTOR = "article"
STABLE_CYCLES_LIMIT = 3

SCROLL_SCRIPT = "() => window.scrollBy(0, window.innerHeight)"
NUDGE_SCRIPT = "() => window.scrollBy(0, 300)"

TIMELINE_SCRIPT = """
() => Array.from(document.querySelectorAll('article')).map((article) => {
  const link = article.querySelector('a:has(time)');
  const href = link ? link.getAttribute('href') : null;
  if (!href) return null;
  const text = article.querySelector('[data-testid="tweetText"]');
  const images = Array.from(article.querySelectorAll('img[src*="pbs.twimg.com/media"]')).map((img) => img.src);
  const hasTruncation =
    article.querySelector('[data-testid="tweet-text-show-more-link"]') !== null ||
    article.querySelector('a[role="link"][aria-expanded="false"]') !== null ||
    Array.from(article.querySelectorAll('span')).some((span) =>
      /^(Show more|显示更多|查看更多)$/.test((span.textContent || '').trim()));
  return {
    href: href,
    text: text ? text.textContent : '',
    imageUrls: images,
    hasVideo: article.querySelector('[data-testid="videoPlayer"]') !== null,
    hasPoll: article.querySelector('[data-testid="cardPoll"]') !== null,
    hasCard: article.querySelector('[data-testid="card.wrapper"]') !== null,
    hasTruncation: hasTruncation,
  };
}).filter(Boolean)
"""


@dataclass(frozen=True, slots=True)
class PostFeatures:
    """Structural markers observed on a timeline item."""

    has_video: bool = False
    has_poll: bool = False
    has_card: bool = False
    has_truncation: bool = False

    @property
    def is_simple(self) -> bool:
        return not (self.has_video or self.has_poll or self.has_card or self.has_truncation)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "PostFeatures":
        return cls(
            has_video=bool(raw.get("hasVideo")),
            has_poll=bool(raw.get("hasPoll")),
            has_card=bool(raw.get("hasCard")),
            has_truncation=bool(raw.get("hasTruncation")),
        )


@dataclass(frozen=True, slots=True)
class TimelinePost:
    href: str
    text: str
    image_urls: tuple[str, ...]
    features: PostFeatures

    @property
    def url(self) -> str:
        return absolute_post_url(self.href)

    @property
    def is_simple(self) -> bool:
        return self.features.is_simple


def parse_timeline_items(raw_items: Iterable[Any]) -> list[TimelinePost]:
    posts: list[TimelinePost] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        href = str(raw.get("href") or "").strip()
        if not href:
            continue
        posts.append(
            TimelinePost(
                href=href,
                text=str(raw.get("text") or ""),
                image_urls=tuple(str(url) for url in raw.get("imageUrls") or () if url),
                features=PostFeatures.from_raw(raw),
            )
        )
    return posts


def profile_url(handle_or_url: str) -> str:
    value = handle_or_url.strip()
    if value.startswith(("http://", "https://")):
        return value
    return f"{BASE_URL}/{value.lstrip('@').strip('/')}"


def save_simple_post(post: TimelinePost, *, session: requests.Session, options: HarvestOptions) -> bool:
    """Persist a simple post straight from its timeline rendering (text and images)."""
    try:
        ref = parse_post_url(post.href)
    except MalformedPostUrlError as exc:
        logger.error("Cannot save simple post: %s", exc)
        return False

    paths = PostPaths.for_post(options.output_root, ref)
    if is_post_done(paths):
        return True
    try:
        paths.ensure_dir()
        write_status(paths, PostStatus.PENDING)
        steps: list[str] = []
        if post.text:
            save_text(paths.text, post.text)
            logger.info("Saved text for post %s/%s", ref.author_id, ref.post_id)
            steps.append("text")
        saved = download_images(session, filter_media_image_urls(post.image_urls), paths)
        if saved:
            logger.info("Saved %d image(s) for post %s/%s", len(saved), ref.author_id, ref.post_id)
        steps.append("images")
        write_status(paths, PostStatus.DONE, steps)
    except OSError as exc:
        logger.error("Error saving content for %s: %s", post.url, exc)
        return False
    return True


class LinkDiscovery:
    """Scroll-and-extract loop over one already-open profile page."""

    def __init__(self, page: Any, *, options: HarvestOptions, session: requests.Session) -> None:
        self.page = page
        self.options = options
        self.session = session
        self.links: dict[str, TimelinePost] = {}
        self.saved_inline: set[str] = set()
        self.found = 0

    async def wait_for_content(self) -> None:
        retries = self.options.initial_wait_retries
        logger.info("Waiting for posts to appear...")
        for attempt in range(1, retries + 1):
            try:
                await self.page.wait_for_selector(
                    TIMELINE_ITEM_SELECTOR,
                    timeout=self.options.initial_wait_timeout * 1000,
                )
                logger.info("Posts found")
                return
            except PlaywrightError as exc:
                if attempt == retries:
                    logger.error("No posts rendered after %d attempts: %s", retries, exc)
                    break
                logger.info(
                    "No posts found yet, retrying in %.0f seconds (%d/%d)",
                    self.options.initial_retry_delay,
                    attempt,
                    retries,
                )
                await asyncio.sleep(self.options.initial_retry_delay)
                try:
                    await self.page.evaluate(NUDGE_SCRIPT)
                except PlaywrightError as nudge_exc:
                    logger.debug("Scroll nudge failed: %s", nudge_exc)

        await self._save_error_screenshot()
        raise NoContentError(
            "Could not load timeline content. The page might be unavailable or the account may not exist."
        )

    async def _save_error_screenshot(self) -> None:
        path = self.options.output_root / f"error-screenshot-{int(time.time())}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self.page.screenshot(path=str(path))
            logger.info("Page screenshot saved to %s", path)
        except (PlaywrightError, OSError) as exc:
            logger.error("Failed to take error screenshot: %s", exc)

    async def extract_visible(self) -> bool:
        """Record newly rendered posts; returns ``True`` once the link limit is reached."""
        try:
            raw_items = await self.page.evaluate(TIMELINE_SCRIPT) or []
        except PlaywrightError as exc:
            logger.warning("Failed to read rendered posts: %s", exc)
            return False

        for post in parse_timeline_items(raw_items):
            if post.url in self.links:
                continue
            self.links[post.url] = post
            self.found += 1
            logger.info("Found post: %s", post.url)

            if self.options.download_content:
                if post.is_simple:
                    logger.info("Directly saving simple post: %s", post.url)
                    if save_simple_post(post, session=self.session, options=self.options):
                        self.saved_inline.add(post.url)
                    else:
                        logger.warning("Could not save %s from the timeline; it will be processed individually", post.url)
                else:
                    logger.info("Post %s has complex content and will be processed individually", post.url)

            max_links = self.options.max_links
            if max_links is not None and len(self.links) >= max_links:
                logger.info("Reached link limit of %d. Stopping collection.", max_links)
                return True
        return False

    async def scroll(self) -> None:
        try:
            await self.page.evaluate(SCROLL_SCRIPT)
        except PlaywrightError as exc:
            logger.warning("Scroll failed: %s", exc)
        await asyncio.sleep(self.options.scroll_settle)

    async def run(self) -> list[str]:
        await self.wait_for_content()
        if await self.extract_visible():
            return self.result()

        previous_size = len(self.links)
        stable_cycles = 0
        max_posts = self.options.max_posts
        while max_posts is None or self.found < max_posts:
            await self.scroll()
            if await self.extract_visible():
                break
            size = len(self.links)
            if size == previous_size:
                stable_cycles += 1
                if stable_cycles >= STABLE_CYCLES_LIMIT:
                    logger.info("Reached bottom of the timeline or no more new content.")
                    break
            else:
                stable_cycles = 0
                previous_size = size
        return self.result()

    def result(self) -> list[str]:
        urls = list(self.links)
        if self.options.max_links is not None:
            urls = urls[: self.options.max_links]
        logger.info("Discovery complete. Found %d unique posts, returning %d.", len(self.links), len(urls))
        return urls

    def pending(self, urls: Iterable[str]) -> list[str]:
        return [url for url in urls if url not in self.saved_inline]


async def _navigate_profile(page: Any, url: str, options: HarvestOptions) -> None:
    try:
        await safe_navigate(page, url, "profile", options)
    except RateLimitedError as exc:
        logger.warning("%s; continuing with current page state", exc)


async def find_links(
    browser: "BrowserSession",
    profile: str,
    *,
    options: HarvestOptions,
    session: requests.Session | None = None,
) -> list[str]:
    """Discover post links on a profile timeline and, if enabled, harvest their content.

    Simple posts are saved while scrolling; complex ones are handed to
    :func:`process_posts` on the same page once discovery ends. Only
    :class:`NoContentError` is raised to the caller.
    """
    http_session = session or build_session(DEFAULT_USER_AGENT, True)
    url = profile_url(profile)
    page = await browser.new_page()
    try:
        if options.block_requests:
            await install_request_blocking(page)
        await _navigate_profile(page, url, options)

        discovery = LinkDiscovery(page, options=options, session=http_session)
        links = await discovery.run()

        if options.download_content and links:
            remaining = discovery.pending(links)
            if remaining:
                logger.info("Processing %d posts that need full extraction", len(remaining))
                await process_posts(remaining, session=http_session, options=options, page=page)
            else:
                logger.info("All posts were saved directly from the timeline")
            await _navigate_profile(page, url, options)
        return links
    finally:
        await page.close()


__all__ = [
    "LinkDiscovery",
    "PostFeatures",
    "STABLE_CYCLES_LIMIT",
    "TimelinePost",
    "find_links",
    "parse_timeline_items",
    "profile_url",
    "save_simple_post",
]
