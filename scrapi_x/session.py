"""Authenticated browser session handle shared by discovery and extraction."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import time
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .core import BASE_URL, DEFAULT_USER_AGENT
from .errors import ScrapiXError

logger = logging.getLogger(__name__)

LOGIN_URL = f"{BASE_URL}/i/flow/login"
STATE_MAX_AGE_DAYS = 7.0
REFRESH_INTERVAL = 30 * 60.0
LOGIN_POLL_INTERVAL = 5.0

LOGGED_OUT_SELECTORS = (
    'a[href="/i/flow/login"]',
    'a[href="/i/flow/signup"]',
    'a[data-testid="login"]',
    'a[data-testid="signup"]',
)
LOGGED_IN_SELECTORS = (
    'a[aria-label="Profile"]',
    'a[data-testid="AppTabBar_Profile_Link"]',
    'a[data-testid="SideNav_NewTweet_Button"]',
    'a[href="/compose/tweet"]',
)


def state_is_fresh(path: Path, max_age_days: float = STATE_MAX_AGE_DAYS, now: float | None = None) -> bool:
    if not path.exists():
        return False
    current = time.time() if now is None else now
    age_days = (current - path.stat().st_mtime) / 86400
    return age_days < max_age_days


async def is_logged_in(page: Any) -> bool:
    for selector in LOGGED_OUT_SELECTORS:
        if await page.query_selector(selector):
            return False
    for selector in LOGGED_IN_SELECTORS:
        if await page.query_selector(selector):
            return True
    return bool(await page.query_selector_all('article[data-testid="tweet"]'))


class BrowserSession:
    """Owns the Playwright browser, its logged-in context and the refresh task.

    The context is created lazily by :meth:`acquire` and lives until
    :meth:`release`; callers only open and close pages.
    """

    def __init__(
        self,
        state_path: Path,
        *,
        headless: bool = False,
        user_agent: str = DEFAULT_USER_AGENT,
        refresh_interval: float = REFRESH_INTERVAL,
        login_timeout: float = 300.0,
        navigation_timeout: float = 60.0,
    ) -> None:
        self.state_path = Path(state_path)
        self.headless = headless
        self.user_agent = user_agent
        self.refresh_interval = refresh_interval
        self.login_timeout = login_timeout
        self.navigation_timeout = navigation_timeout
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._refresh_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "BrowserSession":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()

    async def acquire(self) -> Any:
        async with self._lock:
            if self._context is None:
                await self._start()
            return self._context

    async def new_page(self) -> Any:
        context = await self.acquire()
        return await context.new_page()

    async def _new_context(self, with_state: bool) -> Any:
        kwargs: dict[str, Any] = {
            "user_agent": self.user_agent,
            "viewport": {"width": 1280, "height": 800},
        }
        if with_state:
            kwargs["storage_state"] = str(self.state_path)
        return await self._browser.new_context(**kwargs)

    async def _start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-blink-features=AutomationControlled"],
        )
        if state_is_fresh(self.state_path):
            context = await self._new_context(with_state=True)
            if await self._verify(context):
                logger.info("Using existing session from %s", self.state_path)
                self._context = context
                self.start_refresh()
                return
            logger.info("Saved session expired, logging in again")
            await context.close()
            self.state_path.unlink(missing_ok=True)
        elif self.state_path.exists():
            logger.info("Saved session at %s is older than %.0f days", self.state_path, STATE_MAX_AGE_DAYS)

        self._context = await self._login()
        self.start_refresh()

    async def _verify(self, context: Any) -> bool:
        page = await context.new_page()
        try:
            await page.goto(BASE_URL, wait_until="domcontentloaded", timeout=self.navigation_timeout * 1000)
            return await is_logged_in(page)
        except PlaywrightError as exc:
            logger.warning("Could not verify saved session: %s", exc)
            return False
        finally:
            await page.close()

    async def _login(self) -> Any:
        if self.headless:
            raise ScrapiXError(
                f"No valid session at {self.state_path}; run once without --headless to log in interactively"
            )
        context = await self._new_context(with_state=False)
        page = await context.new_page()
        await page.goto(LOGIN_URL, wait_until="domcontentloaded", timeout=self.navigation_timeout * 1000)
        logger.info("Log in using the opened browser window (waiting up to %.0f seconds)", self.login_timeout)
        deadline = time.monotonic() + self.login_timeout
        try:
            while time.monotonic() < deadline:
                await asyncio.sleep(LOGIN_POLL_INTERVAL)
                try:
                    if await is_logged_in(page):
                        await self._save_state(context)
                        logger.info("Login detected; session saved to %s", self.state_path)
                        return context
                except PlaywrightError as exc:
                    logger.debug("Login check failed: %s", exc)
        finally:
            await page.close()
        await context.close()
        raise ScrapiXError("Timed out waiting for login")

    async def _save_state(self, context: Any) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        if self.state_path.exists():
            shutil.copyfile(self.state_path, self.state_path.with_name(self.state_path.name + ".backup"))
        await context.storage_state(path=str(self.state_path))

    async def refresh(self) -> bool:
        """Revisit the home page and re-save cookies while the session is still valid."""
        if self._context is None:
            return False
        page = await self._context.new_page()
        try:
            await page.goto(BASE_URL, wait_until="domcontentloaded", timeout=self.navigation_timeout * 1000)
            if not await is_logged_in(page):
                logger.warning("Session refresh failed, no longer logged in")
                return False
            await self._save_state(self._context)
            logger.info("Session refreshed")
            return True
        except PlaywrightError as exc:
            logger.error("Error refreshing session: %s", exc)
            return False
        finally:
            await page.close()

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            logger.info("Performing periodic session refresh")
            await self.refresh()

    def start_refresh(self) -> asyncio.Task | None:
        if self.refresh_interval <= 0:
            return None
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())
        return self._refresh_task

    async def stop_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def release(self) -> None:
        await self.stop_refresh()
        if self._context is not None:
            try:
                await self._save_state(self._context)
            except PlaywrightError as exc:
                logger.warning("Could not save session state: %s", exc)
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


__all__ = [
    "BrowserSession",
    "is_logged_in",
    "state_is_fresh",
]
