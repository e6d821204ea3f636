"""Exception types raised by the Scrapi X harvester."""
from __future__ import annotations


class ScrapiXError(Exception):
    """Base class for harvester failures."""


class MalformedPostUrlError(ScrapiXError, ValueError):
    """A post URL does not have the ``/{author}/status/{id}`` shape."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Invalid post URL format: {url}")


class RateLimitedError(ScrapiXError):
    """The site answered with HTTP 429 and the item could not be completed."""

    def __init__(self, url: str, reset_at: float | None = None) -> None:
        self.url = url
        self.reset_at = reset_at
        super().__init__(f"HTTP 429 Too Many Requests while loading {url}")


class ExternalToolError(ScrapiXError):
    """The external muxer exited unsuccessfully or could not be started."""

    def __init__(self, command: list[str], returncode: int | None, detail: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.detail = detail
        message = f"{command[0] if command else 'command'} failed"
        if returncode is not None:
            message += f" with exit status {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class NoContentError(ScrapiXError):
    """The timeline never rendered any post; the discovery run cannot continue."""


__all__ = [
    "ExternalToolError",
    "MalformedPostUrlError",
    "NoContentError",
    "RateLimitedError",
    "ScrapiXError",
]
