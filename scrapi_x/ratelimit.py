"""Rate-limit monitor attached to a page while it navigates."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

from playwright.async_api import Error as PlaywrightError

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429
REMAINING_HEADER = "x-rate-limit-remaining"
RESET_HEADER = "x-rate-limit-reset"
RETRY_AFTER_HEADER = "retry-after"
POST_RELOAD_PAUSE = 2.0


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def reset_time_from_headers(headers: Mapping[str, str], now: float) -> float | None:
    """Epoch seconds at which the quota resets, from ``x-rate-limit-reset`` or ``Retry-After``."""
    raw_reset = _header(headers, RESET_HEADER)
    if raw_reset:
        try:
            return float(raw_reset)
        except ValueError:
            logger.warning("Unparseable %s header: %r", RESET_HEADER, raw_reset)
    raw_retry = _header(headers, RETRY_AFTER_HEADER)
    if raw_retry:
        try:
            return now + float(raw_retry)
        except ValueError:
            logger.warning("Unparseable %s header: %r", RETRY_AFTER_HEADER, raw_retry)
    return None


def compute_wait(headers: Mapping[str, str], now: float) -> float:
    """Seconds to wait before resuming; ``0`` when no usable reset hint exists."""
    reset_at = reset_time_from_headers(headers, now)
    if reset_at is None:
        return 0.0
    return max(reset_at - now, 0.0)


class RateLimitMonitor:
    """Watches a page's responses and pauses work while the quota resets.

    The listener pauses the monitor as soon as a 429 with a reset hint is
    seen and starts a wait task owned by the monitor. While that task runs
    :meth:`wait_if_paused` blocks, so callers can place it between their own
    steps. After the wait the page is reloaded and the caller carries on with
    the same operation. :meth:`close` cancels a wait that is still pending.
    """

    def __init__(
        self,
        page: Any,
        *,
        reload_timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.page = page
        self.reload_timeout = reload_timeout
        self.events = 0
        self.total_wait = 0.0
        self._sleep = sleep
        self._clock = clock
        self._clear = asyncio.Event()
        self._clear.set()
        self._attached = False
        self._task: asyncio.Task | None = None
        self._listener = self.handle_response

    def attach(self) -> "RateLimitMonitor":
        if not self._attached:
            self.page.on("response", self._listener)
            self._attached = True
        return self

    def detach(self) -> None:
        if self._attached:
            self.page.remove_listener("response", self._listener)
            self._attached = False

    async def close(self) -> None:
        """Detach and cancel any wait still in progress."""
        self.detach()
        task, self._task = self._task, None
        if task is not None and not task.done():
            logger.info("Cancelling pending rate-limit wait")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._clear.set()

    async def __aenter__(self) -> "RateLimitMonitor":
        return self.attach()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def paused(self) -> bool:
        return not self._clear.is_set()

    async def wait_if_paused(self) -> None:
        await self._clear.wait()

    def handle_response(self, response: Any) -> None:
        if response.status != RATE_LIMIT_STATUS:
            return
        self.events += 1
        headers = response.headers or {}
        logger.warning("Rate limit response (HTTP 429) for %s", response.url)
        remaining = _header(headers, REMAINING_HEADER)
        if remaining is not None:
            logger.warning("Rate limit remaining: %s", remaining)
        now = self._clock()
        reset_at = reset_time_from_headers(headers, now)
        if reset_at is not None:
            logger.warning("Rate limit resets at: %s", datetime.fromtimestamp(reset_at).isoformat(timespec="seconds"))
        wait = compute_wait(headers, now)
        if wait <= 0:
            return
        if self.paused:
            logger.debug("Already waiting for the rate limit to reset")
            return

        self._clear.clear()
        self._task = asyncio.get_running_loop().create_task(self._wait_and_reload(wait))

    async def _wait_and_reload(self, wait: float) -> None:
        try:
            logger.warning("Waiting %d seconds for rate limit to reset...", int(wait + 0.999))
            await self._sleep(wait)
            self.total_wait += wait
            try:
                await self.page.reload(wait_until="domcontentloaded", timeout=self.reload_timeout * 1000)
            except PlaywrightError as exc:
                logger.warning("Reload after rate-limit wait failed: %s", exc)
            await self._sleep(POST_RELOAD_PAUSE)
            logger.warning("Rate limit wait complete, continuing")
        finally:
            self._clear.set()


__all__ = [
    "RateLimitMonitor",
    "compute_wait",
    "reset_time_from_headers",
]
