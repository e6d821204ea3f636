from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from scrapi_x import BrowserSession, HarvestOptions, build_session, find_links, process_posts
from scrapi_x.core import DEFAULT_USER_AGENT


async def run() -> None:
    """Demonstrate the Python API by harvesting a few posts from one profile."""
    session = build_session(DEFAULT_USER_AGENT, verify=True)

    options = HarvestOptions(
        output_root=Path("./example_runs"),
        max_posts=20,
        max_links=10,
        delay=5.0,
        download_video=False,
    )

    async with BrowserSession(Path("./x_session.json")) as browser:
        links = await find_links(browser, "@nasa", options=options, session=session)
        print(f"Discovered {len(links)} posts")

        summary = await process_posts(
            ["https://x.com/nasa/status/1790000000000000000"],
            session=session,
            options=options,
            browser=browser,
        )
        print(f"Processed {summary.processed} of {summary.total} individual posts")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    asyncio.run(run())


if __name__ == "__main__":
    main()
