# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Playwright browser session for a single render.

One session = one Chromium process, one isolated BrowserContext, one Page.
Sessions are never pooled: each render launches its own and tears it down
on exit, so cookies, cache and JS state cannot leak between requests.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright

from .errors import InternalError

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = {"width": 1280, "height": 800}
DEFAULT_LOCALE = "en-US"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; A11yDeepRender/1.0)"

# Asset classes that dominate load time and never affect the markup.
BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset({"image", "media", "font"})

_ROUTE_PATTERN = "**/*"

_MISSING_EXECUTABLE_MARKER = "executable doesn't exist"
_INSTALL_TIMEOUT_S = 300  # Chromium download is ~140MB

# Containers run unprivileged with a tiny /dev/shm.
_CONTAINER_ARGS = ("--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu")
# Background services a one-shot render never needs.
_QUIET_ARGS = (
    "--no-first-run",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-component-update",
    "--disable-sync",
    "--noerrdialogs",
)


def should_block(resource_type: str) -> bool:
    """Resource-blocking policy: abort images, media and fonts."""
    return resource_type in BLOCKED_RESOURCE_TYPES


@dataclass
class BrowserConfig:
    headless: bool = True
    locale: str = DEFAULT_LOCALE
    timezone_id: str = DEFAULT_TIMEZONE
    viewport_width: int = DEFAULT_VIEWPORT["width"]
    viewport_height: int = DEFAULT_VIEWPORT["height"]
    user_agent: str = DEFAULT_USER_AGENT
    ignore_https_errors: bool = True
    java_script_enabled: bool = True

    def context_options(self) -> dict:
        """Keyword arguments for ``Browser.new_context``."""
        return {
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "user_agent": self.user_agent,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "ignore_https_errors": self.ignore_https_errors,
            "java_script_enabled": self.java_script_enabled,
        }


def chromium_launch_args(config: BrowserConfig) -> list[str]:
    return [*_CONTAINER_ARGS, f"--lang={config.locale}", *_QUIET_ARGS]


# ── Chromium auto-install ─────────────────────────────────────────

_install_lock: asyncio.Lock | None = None
_install_result: bool | None = None


async def _run_chromium_install() -> bool:
    cmd = (sys.executable, "-m", "playwright", "install", "chromium")
    logger.info("Chromium executable missing, running: %s", " ".join(cmd[1:]))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
        )
        async with asyncio.timeout(_INSTALL_TIMEOUT_S):
            _, err = await proc.communicate()
    except TimeoutError:
        with suppress(ProcessLookupError):
            proc.kill()
        with suppress(Exception):
            await proc.wait()
        logger.warning("Chromium download did not finish within %ds", _INSTALL_TIMEOUT_S)
        return False
    except OSError:
        logger.warning("Could not spawn the Playwright installer", exc_info=True)
        return False

    if proc.returncode != 0:
        logger.warning("Chromium install exited with %d: %s", proc.returncode, err.decode(errors="replace")[:500])
        return False
    logger.info("Chromium install finished")
    return True


async def _auto_install_chromium() -> bool:
    """Download Chromium with the Playwright CLI, once per process.

    Concurrent callers wait on the same attempt and all see its result.
    """
    global _install_lock, _install_result  # noqa: PLW0603
    if _install_lock is None:
        _install_lock = asyncio.Lock()
    async with _install_lock:
        if _install_result is None:
            _install_result = await _run_chromium_install()
        return _install_result


# ── Session ───────────────────────────────────────────────────────


class BrowserSession:
    """Single-use Playwright session: browser process, context and page."""

    def __init__(self, config: BrowserConfig | None = None):
        self.config = config or BrowserConfig()
        self._driver: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._blocking = False

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("BrowserSession not started; use create_session() or await start()")
        return self._page

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            raise RuntimeError("BrowserSession not started")
        return self._context

    @property
    def is_blocking(self) -> bool:
        """True while the resource-blocking route is installed."""
        return self._blocking

    async def _launch(self) -> Browser:
        chromium = self._driver.chromium
        args = chromium_launch_args(self.config)
        try:
            return await chromium.launch(headless=self.config.headless, args=args)
        except Exception as exc:
            if _MISSING_EXECUTABLE_MARKER not in str(exc).lower():
                raise
            if not await _auto_install_chromium():
                raise InternalError(
                    "Chromium is missing and could not be installed; run: playwright install chromium"
                ) from exc
        return await chromium.launch(headless=self.config.headless, args=args)

    async def start(self) -> None:
        """Launch the browser, then open an isolated context and its page."""
        self._driver = await async_playwright().start()
        self._browser = await self._launch()
        self._context = await self._browser.new_context(**self.config.context_options())
        self._page = await self._context.new_page()
        logger.debug("Browser session started (headless=%s)", self.config.headless)

    async def _route_handler(self, route: Route) -> None:
        if should_block(route.request.resource_type):
            await route.abort("blockedbyclient")
        else:
            await route.continue_()

    async def block_resources(self) -> None:
        """Install the resource-blocking route on the page."""
        if not self._blocking:
            await self.page.route(_ROUTE_PATTERN, self._route_handler)
            self._blocking = True

    async def unblock_resources(self) -> None:
        """Remove the resource-blocking route; later requests go through unmodified."""
        if self._blocking:
            await self.page.unroute(_ROUTE_PATTERN, self._route_handler)
            self._blocking = False

    async def stop(self) -> None:
        """Close page, context, browser and driver, in that order.

        Safe on a partially started session. Close errors are suppressed so
        they never mask the render outcome.
        """
        page, context, browser, driver = self._page, self._context, self._browser, self._driver
        self._page = self._context = self._browser = self._driver = None
        self._blocking = False

        closers = [
            page.close if page is not None else None,
            context.close if context is not None else None,
            browser.close if browser is not None else None,
            driver.stop if driver is not None else None,
        ]
        for close in closers:
            if close is None:
                continue
            with suppress(Exception):
                await close()
        logger.debug("Browser session stopped")

    async def __aenter__(self) -> BrowserSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()


@asynccontextmanager
async def create_session(config: BrowserConfig | None = None) -> AsyncGenerator[BrowserSession, None]:
    """Yield a started session; teardown runs on every exit path.

    ``start()`` sits inside the ``try`` so a launch that fails halfway
    still closes whatever was already opened.
    """
    session = BrowserSession(config)
    try:
        await session.start()
        yield session
    finally:
        await session.stop()
