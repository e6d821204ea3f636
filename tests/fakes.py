"""In-memory stand-ins for Playwright pages and requests sessions."""
from __future__ import annotations

import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable

import requests
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class FakeResponse:
    def __init__(self, status: int = 200, url: str = "https://x.com/", headers: dict[str, str] | None = None) -> None:
        self.status = status
        self.url = url
        self.headers = headers or {}


class FakeRequest:
    def __init__(self, url: str) -> None:
        self.url = url


class FakeElement:
    def __init__(self, on_click: Callable[[], Any] | None = None) -> None:
        self.clicks = 0
        self._on_click = on_click

    async def click(self, **kwargs: Any) -> None:
        self.clicks += 1
        if self._on_click is not None:
            self._on_click()


class FakePage:
    """Scriptable page: ``scripts`` maps an evaluated script to a value or a callable."""

    def __init__(
        self,
        *,
        scripts: dict[str, Any] | None = None,
        present: set[str] | None = None,
        missing: set[str] | None = None,
        goto_status: int = 200,
        goto_headers: dict[str, str] | None = None,
        goto_error: Exception | None = None,
    ) -> None:
        self.scripts = dict(scripts or {})
        self.present = set(present or ())
        self.missing = set(missing or ())
        self.goto_status = goto_status
        self.goto_headers = dict(goto_headers or {})
        self.goto_error = goto_error
        self.gotos: list[str] = []
        self.evaluated: list[str] = []
        self.clicked: list[str] = []
        self.screenshots: list[dict[str, Any]] = []
        self.routes: list[str] = []
        self.listeners: dict[str, list[Callable[..., Any]]] = {}
        self.elements: dict[str, list[FakeElement]] = {}
        self.on_click: dict[str, Callable[[], Any]] = {}
        self.events: list[str] = []
        self.reloads = 0
        self.closed = False

    async def goto(self, url: str, **kwargs: Any) -> FakeResponse:
        self.gotos.append(url)
        self.events.append(f"goto {url}")
        if self.goto_error is not None:
            raise self.goto_error
        response = FakeResponse(status=self.goto_status, url=url, headers=self.goto_headers)
        for coro in self.emit("response", response):
            asyncio.ensure_future(coro)
        return response

    async def reload(self, **kwargs: Any) -> None:
        self.reloads += 1
        self.events.append("reload")

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> FakeElement:
        if selector in self.missing:
            raise PlaywrightTimeoutError(f"Timeout waiting for {selector}")
        return FakeElement()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append(script)
        handler = self.scripts.get(script)
        if callable(handler):
            return handler(arg)
        return handler

    async def query_selector(self, selector: str) -> FakeElement | None:
        return FakeElement() if selector in self.present else None

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        return self.elements.get(selector, [])

    async def click(self, selector: str, **kwargs: Any) -> None:
        self.clicked.append(selector)
        hook = self.on_click.get(selector)
        if hook is not None:
            hook()

    async def screenshot(self, path: str | None = None, **kwargs: Any) -> bytes:
        self.screenshots.append({"path": path, **kwargs})
        if path:
            Path(path).write_bytes(b"png")
        return b"png"

    async def route(self, pattern: str, handler: Callable[..., Any]) -> None:
        self.routes.append(pattern)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.get(event, []).remove(handler)

    def emit(self, event: str, payload: Any) -> list[Any]:
        results = []
        for handler in list(self.listeners.get(event, [])):
            result = handler(payload)
            if inspect.iscoroutine(result):
                results.append(result)
        return results

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.pages_opened = 0

    async def new_page(self) -> FakePage:
        self.pages_opened += 1
        return self.page


class FakeHttpResponse:
    def __init__(self, payload: bytes, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code
        self.headers: dict[str, str] = {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(str(self.status_code), response=self)

    def iter_content(self, chunk_size: int = 8192):
        yield self._payload

    def close(self) -> None:
        return None


class FakeHttpSession:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.calls: list[str] = []
        self.failing = set(failing or ())

    def get(self, url: str, *, stream: bool, timeout: int) -> FakeHttpResponse:
        self.calls.append(url)
        if url in self.failing:
            return FakeHttpResponse(b"", status_code=404)
        return FakeHttpResponse(f"bytes:{url}".encode("utf-8"))
