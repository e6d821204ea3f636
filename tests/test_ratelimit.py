from __future__ import annotations

import asyncio

from fakes import FakePage, FakeResponse

from scrapi_x.ratelimit import RateLimitMonitor, compute_wait, reset_time_from_headers

RATE_LIMITED = FakeResponse(
    status=429,
    url="https://x.com/i/api/graphql/abc/TweetDetail",
    headers={"x-rate-limit-remaining": "0", "x-rate-limit-reset": "1005"},
)


def test_compute_wait_uses_reset_header() -> None:
    assert compute_wait({"x-rate-limit-reset": "1005"}, now=1000.0) == 5.0
    assert compute_wait({"X-Rate-Limit-Reset": "990"}, now=1000.0) == 0.0


def test_compute_wait_falls_back_to_retry_after() -> None:
    assert compute_wait({"Retry-After": "12"}, now=1000.0) == 12.0
    assert reset_time_from_headers({"retry-after": "soon"}, now=1000.0) is None
    assert compute_wait({}, now=1000.0) == 0.0


def test_monitor_waits_reloads_and_resumes() -> None:
    page = FakePage()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    async def scenario() -> list[str]:
        monitor = RateLimitMonitor(page, sleep=fake_sleep, clock=lambda: 1000.0)
        monitor.attach()
        page.emit("response", RATE_LIMITED)
        assert monitor.paused is True
        page.events.append("navigated")

        await monitor.wait_if_paused()
        page.events.append("resumed")

        assert monitor.paused is False
        assert monitor.events == 1
        assert monitor.total_wait == 5.0
        await monitor.close()
        return page.events

    events = asyncio.run(scenario())

    assert sleeps == [5.0, 2.0]
    assert page.reloads == 1
    assert events == ["navigated", "reload", "resumed"]


def test_second_rate_limit_during_wait_does_not_stack() -> None:
    page = FakePage()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    async def scenario() -> RateLimitMonitor:
        async with RateLimitMonitor(page, sleep=fake_sleep, clock=lambda: 1000.0) as monitor:
            page.emit("response", RATE_LIMITED)
            page.emit("response", RATE_LIMITED)
            await monitor.wait_if_paused()
        return monitor

    monitor = asyncio.run(scenario())

    assert monitor.events == 2
    assert sleeps == [5.0, 2.0]
    assert page.reloads == 1


def test_close_cancels_pending_wait_without_reloading() -> None:
    page = FakePage()

    async def scenario() -> RateLimitMonitor:
        monitor = RateLimitMonitor(page, clock=lambda: 1000.0).attach()
        page.emit("response", RATE_LIMITED)
        await asyncio.sleep(0)
        assert monitor.paused is True

        await monitor.close()

        assert monitor.paused is False
        await asyncio.sleep(0)
        return monitor

    monitor = asyncio.run(scenario())

    assert page.reloads == 0
    assert monitor.total_wait == 0.0
    assert page.listeners["response"] == []


def test_monitor_ignores_other_statuses_and_missing_hints() -> None:
    page = FakePage()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def scenario() -> RateLimitMonitor:
        monitor = RateLimitMonitor(page, sleep=fake_sleep, clock=lambda: 1000.0)
        async with monitor:
            page.emit("response", FakeResponse(status=200))
            page.emit("response", FakeResponse(status=429))
            assert monitor.paused is False
            assert page.listeners["response"] == [monitor.handle_response]
        return monitor

    monitor = asyncio.run(scenario())

    assert monitor.events == 1
    assert sleeps == []
    assert page.reloads == 0
    assert page.listeners["response"] == []
