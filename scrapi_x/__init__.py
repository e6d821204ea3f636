"""Public package surface for Scrapi X."""
from .core import (
    BASE_URL,
    DEFAULT_USER_AGENT,
    HarvestOptions,
    PostPaths,
    PostRef,
    build_session,
    parse_post_url,
)
from .discovery import PostFeatures, find_links
from .errors import (
    ExternalToolError,
    MalformedPostUrlError,
    NoContentError,
    RateLimitedError,
    ScrapiXError,
)
from .extractor import BatchSummary, PostOutcome, process_post_content, process_posts
from .resume import is_post_done
from .session import BrowserSession
from .video import VideoReconstructor

__version__ = "0.1.0"

__all__ = [
    "BASE_URL",
    "DEFAULT_USER_AGENT",
    "BatchSummary",
    "BrowserSession",
    "ExternalToolError",
    "HarvestOptions",
    "MalformedPostUrlError",
    "NoContentError",
    "PostFeatures",
    "PostOutcome",
    "PostPaths",
    "PostRef",
    "RateLimitedError",
    "ScrapiXError",
    "VideoReconstructor",
    "build_session",
    "find_links",
    "is_post_done",
    "parse_post_url",
    "process_post_content",
    "process_posts",
    "__version__",
]
