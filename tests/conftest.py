# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures.

Every test runs against an in-memory Playwright stand-in (``fake_driver``)
unless it is marked ``allow_real_browser``. The fake counts open browsers,
contexts and pages so tests can assert that sessions are fully released.
"""

from __future__ import annotations

try:
    import deeprender  # noqa: F401
except ImportError:
    raise ImportError("deeprender is not installed. Run: pip install -e '.[dev]'") from None

import asyncio
from dataclasses import dataclass, field

import pytest

from deeprender.config import RenderSettings, TimeoutLimits

STATIC_HTML = "<html><head><title>Static</title></head><body><h1>Hello</h1></body></html>"


# ---------------------------------------------------------------------------
# Fake Playwright driver
# ---------------------------------------------------------------------------


@dataclass
class GotoCall:
    url: str
    wait_until: str | None
    timeout: float | None
    blocked: bool  # a route was installed when goto ran


@dataclass
class Behavior:
    """Knobs describing how the fake browser reacts."""

    html: str = STATIC_HTML
    status: int = 200
    redirects: dict[str, str] = field(default_factory=dict)
    # Consumed one per goto() call; None = succeed
    goto_errors: list[BaseException | None] = field(default_factory=list)
    goto_delay: float = 0.0
    # Simulate a page that breaks when its font request is aborted
    fail_when_blocked: bool = False
    # None = load state never reached (waits until cancelled / timeout)
    load_state_delay: float | None = 0.0
    load_state_error: BaseException | None = None
    # Sub-resource types sent through the routes on every goto
    subresource_types: tuple[str, ...] = ()
    dispatched: dict[str, FakeRoute] = field(default_factory=dict)
    launch_error: BaseException | None = None
    close_error: BaseException | None = None
    content_error: BaseException | None = None
    # Consumed one per content() call, before content_error; None = succeed
    content_errors: list[BaseException | None] = field(default_factory=list)
    # page.url after a consumed content error (a client redirect in flight)
    client_redirect: str | None = None
    goto_calls: list[GotoCall] = field(default_factory=list)
    load_state_calls: list[tuple[str | None, float | None]] = field(default_factory=list)


@dataclass
class Resources:
    """Live and cumulative resource counters."""

    drivers: int = 0
    browsers: int = 0
    contexts: int = 0
    pages: int = 0
    launched: int = 0
    close_order: list[str] = field(default_factory=list)

    @property
    def open_total(self) -> int:
        return self.drivers + self.browsers + self.contexts + self.pages


class FakeRequest:
    def __init__(self, resource_type: str, url: str) -> None:
        self.resource_type = resource_type
        self.url = url


class FakeRoute:
    def __init__(self, request: FakeRequest) -> None:
        self.request = request
        self.aborted: str | None = None
        self.continued = False

    async def abort(self, error_code: str | None = None) -> None:
        self.aborted = error_code or "failed"

    async def continue_(self, **kwargs) -> None:
        self.continued = True


class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status


class FakePage:
    def __init__(self, driver: FakeDriver) -> None:
        self._driver = driver
        self.url = "about:blank"
        self.routes: list[tuple[str, object]] = []
        self._closed = False

    @property
    def _behavior(self) -> Behavior:
        return self._driver.behavior

    async def route(self, pattern, handler) -> None:
        self.routes.append((pattern, handler))

    async def unroute(self, pattern, handler=None) -> None:
        self.routes = [(p, h) for p, h in self.routes if not (p == pattern and (handler is None or h == handler))]

    async def dispatch(self, resource_type: str, url: str) -> FakeRoute:
        """Send a sub-resource request through the installed routes."""
        route = FakeRoute(FakeRequest(resource_type, url))
        for _pattern, handler in list(self.routes):
            await handler(route)
        return route

    async def goto(self, url: str, *, wait_until=None, timeout=None, **kwargs):
        from playwright.async_api import Error as PlaywrightError

        b = self._behavior
        b.goto_calls.append(GotoCall(url=url, wait_until=wait_until, timeout=timeout, blocked=bool(self.routes)))
        if b.goto_delay:
            await asyncio.sleep(b.goto_delay)
        if b.goto_errors:
            err = b.goto_errors.pop(0)
            if err is not None:
                raise err
        for rtype in b.subresource_types:
            b.dispatched[rtype] = await self.dispatch(rtype, f"{url.rstrip('/')}/{rtype}")
        if b.fail_when_blocked:
            font = await self.dispatch("font", url.rstrip("/") + "/app.woff2")
            if font.aborted:
                raise PlaywrightError(f"net::ERR_BLOCKED_BY_CLIENT at {url}")
        self.url = b.redirects.get(url, url)
        return FakeResponse(b.status)

    async def wait_for_load_state(self, state=None, *, timeout=None) -> None:
        b = self._behavior
        b.load_state_calls.append((state, timeout))
        if b.load_state_delay is None:
            await asyncio.Event().wait()
        elif b.load_state_delay:
            await asyncio.sleep(b.load_state_delay)
        if b.load_state_error is not None:
            raise b.load_state_error

    async def content(self) -> str:
        b = self._behavior
        if b.content_errors:
            err = b.content_errors.pop(0)
            if err is not None:
                if b.client_redirect is not None:
                    self.url = b.client_redirect
                raise err
        if b.content_error is not None:
            raise b.content_error
        return b.html

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._driver.resources.pages -= 1
            self._driver.resources.close_order.append("page")
        if self._behavior.close_error is not None:
            raise self._behavior.close_error


class FakeContext:
    def __init__(self, driver: FakeDriver, options: dict) -> None:
        self._driver = driver
        self.options = options
        self._closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self._driver)
        self._driver.resources.pages += 1
        self._driver.pages.append(page)
        return page

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._driver.resources.contexts -= 1
            self._driver.resources.close_order.append("context")
        if self._driver.behavior.close_error is not None:
            raise self._driver.behavior.close_error


class FakeBrowser:
    def __init__(self, driver: FakeDriver, headless: bool, args: list[str]) -> None:
        self._driver = driver
        self.headless = headless
        self.args = args
        self._closed = False

    async def new_context(self, **options) -> FakeContext:
        ctx = FakeContext(self._driver, options)
        self._driver.resources.contexts += 1
        self._driver.contexts.append(ctx)
        return ctx

    def is_connected(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._driver.resources.browsers -= 1
            self._driver.resources.close_order.append("browser")
        if self._driver.behavior.close_error is not None:
            raise self._driver.behavior.close_error


class FakeChromium:
    def __init__(self, driver: FakeDriver) -> None:
        self._driver = driver

    async def launch(self, *, headless: bool = True, args: list[str] | None = None, **kwargs) -> FakeBrowser:
        if self._driver.behavior.launch_error is not None:
            raise self._driver.behavior.launch_error
        browser = FakeBrowser(self._driver, headless, list(args or []))
        self._driver.resources.browsers += 1
        self._driver.resources.launched += 1
        self._driver.browsers.append(browser)
        return browser


class FakePlaywright:
    def __init__(self, driver: FakeDriver) -> None:
        self._driver = driver
        self.chromium = FakeChromium(driver)
        self._stopped = False

    async def stop(self) -> None:
        if not self._stopped:
            self._stopped = True
            self._driver.resources.drivers -= 1
            self._driver.resources.close_order.append("driver")


class _FakeContextManager:
    def __init__(self, driver: FakeDriver) -> None:
        self._driver = driver

    async def start(self) -> FakePlaywright:
        self._driver.resources.drivers += 1
        return FakePlaywright(self._driver)


class FakeDriver:
    """Replacement for ``playwright.async_api.async_playwright``."""

    def __init__(self) -> None:
        self.behavior = Behavior()
        self.resources = Resources()
        self.browsers: list[FakeBrowser] = []
        self.contexts: list[FakeContext] = []
        self.pages: list[FakePage] = []

    def async_playwright(self) -> _FakeContextManager:
        return _FakeContextManager(self)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fake_driver(request, monkeypatch):
    """Safety net: never launch a real Chromium in unit tests.

    Tests that really need a browser opt out with::

        @pytest.mark.allow_real_browser
    """
    if "allow_real_browser" in request.keywords:
        yield None
        return
    driver = FakeDriver()
    monkeypatch.setattr("deeprender.browser_session.async_playwright", driver.async_playwright)
    yield driver


@pytest.fixture
def fast_settings() -> RenderSettings:
    """Render settings with millisecond-scale waits."""
    return RenderSettings(
        timeouts=TimeoutLimits(min_ms=100, max_ms=2000),
        readiness_fraction=0.5,
        readiness_min_ms=50,
        readiness_max_ms=200,
        settle_delay_ms=10,
        max_concurrent_renders=2,
        queue_timeout_s=0.5,
    )
