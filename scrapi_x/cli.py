"""Command line entry point for the Scrapi X harvester."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Sequence

from .core import DEFAULT_USER_AGENT, HarvestOptions, build_session
from .discovery import find_links
from .errors import NoContentError, ScrapiXError
from .extractor import process_posts
from .session import BrowserSession


def _default_output_root() -> Path:
    env_override = os.environ.get("SCRAPI_X_OUTPUT_DIR")
    if env_override:
        return Path(env_override).expanduser().resolve()
    return Path.cwd() / "output"


def _default_state_file() -> Path:
    env_override = os.environ.get("SCRAPI_X_STATE_FILE")
    if env_override:
        return Path(env_override).expanduser().resolve()
    return Path.cwd() / "x_session.json"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Harvest posts (text, images, videos) from an X profile timeline. Posts are processed "
            "one at a time with a pause between them to stay clear of rate limits."
        )
    )
    parser.add_argument(
        "profile",
        nargs="?",
        help="Profile handle (with or without @) or full profile URL.",
    )
    parser.add_argument(
        "--max-posts",
        type=int,
        default=0,
        help="Stop scrolling after this many posts have been discovered (0 = unlimited, default).",
    )
    parser.add_argument(
        "--max-links",
        type=int,
        default=0,
        help="Return at most this many post links (0 = unlimited, default).",
    )
    parser.add_argument(
        "--no-download",
        dest="download_content",
        action="store_false",
        help="Only discover links; do not save any post content.",
    )
    parser.add_argument(
        "--no-video",
        dest="download_video",
        action="store_false",
        help="Do not reconstruct videos; save a player screenshot and an info file instead.",
    )
    parser.add_argument(
        "--post-url",
        action="append",
        default=[],
        help="Individual post URL to harvest. Provide multiple times for multiple posts.",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=5.0,
        help="Seconds to wait after each harvested post before the next one (default: 5).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Root directory for harvested content. Defaults to ./output (override with SCRAPI_X_OUTPUT_DIR).",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=None,
        help="Saved browser session (cookies/local storage). Defaults to ./x_session.json "
        "(override with SCRAPI_X_STATE_FILE).",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run the browser headless (requires an existing saved session).",
    )
    parser.add_argument(
        "--ffmpeg",
        default="ffmpeg",
        help="Path to the ffmpeg executable used to merge video segments.",
    )
    parser.add_argument(
        "--user-agent",
        default=DEFAULT_USER_AGENT,
        help="User-Agent header for image and segment downloads.",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Disable TLS certificate verification for downloads (only if you trust the network).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, options: HarvestOptions, post_urls: List[str]) -> int:
    session = build_session(args.user_agent, not args.insecure)
    state_file = Path(args.state_file).expanduser().resolve() if args.state_file else _default_state_file()
    exit_code = 0
    async with BrowserSession(state_file, headless=args.headless, user_agent=args.user_agent) as browser:
        if args.profile:
            try:
                links = await find_links(browser, args.profile, options=options, session=session)
            except NoContentError as exc:
                print(f"Failed to harvest {args.profile}: {exc}", file=sys.stderr)
                exit_code = 1
            else:
                print(f"Total unique posts found: {len(links)}")
                for index, link in enumerate(links, start=1):
                    print(f"{index}. {link}")

        if post_urls:
            summary = await process_posts(post_urls, session=session, options=options, browser=browser)
            print(
                f"Posts: total={summary.total} processed={summary.processed} skipped={summary.skipped} "
                f"failed={summary.failed} rate-limited={summary.rate_limited}"
            )
    return exit_code


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    post_urls = [url.strip() for url in args.post_url if url and url.strip()]
    if not args.profile and not post_urls:
        raise SystemExit("No targets selected. Provide a profile handle/URL or --post-url.")

    output_root = Path(args.output_dir).expanduser().resolve() if args.output_dir else _default_output_root()
    output_root.mkdir(parents=True, exist_ok=True)

    try:
        options = HarvestOptions(
            output_root=output_root,
            max_posts=args.max_posts,
            max_links=args.max_links,
            download_content=args.download_content,
            download_video=args.download_video,
            delay=args.delay,
            ffmpeg_path=args.ffmpeg,
        )
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    try:
        exit_code = asyncio.run(_run(args, options, post_urls))
    except ScrapiXError as exc:
        raise SystemExit(str(exc)) from exc
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        exit_code = 130
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
