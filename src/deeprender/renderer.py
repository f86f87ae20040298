# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Render orchestrator: one isolated browser session per render.

Per render, strictly in order:

1. Admission: take a slot from the concurrency limiter (bounded wait).
2. Launch a fresh browser session (browser process, context, page).
3. Install the resource-blocking route (images, media, fonts aborted).
4. Navigate to ``domcontentloaded`` with blocking on.
5. On failure, remove the blocking route and navigate once more.
6. Race the requested readiness state against a ceiling timer.
7. Fixed settle delay so post-load scripts can mutate the DOM.
8. Extract ``page.content()`` and ``page.url``.
9. Tear the session down (always, close errors suppressed).

``render()`` only ever raises ``RenderError`` subclasses.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager, suppress

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from . import RenderRequest, RenderResult, WaitUntil
from .browser_session import BrowserConfig, BrowserSession, create_session
from .config import RenderSettings
from .errors import CapacityError, InternalError, NavigationError, RenderError
from .problem_details import describe_failure

logger = logging.getLogger(__name__)

SessionFactory = Callable[[BrowserConfig | None], AbstractAsyncContextManager[BrowserSession]]

_NAVIGATION_WAIT_UNTIL = "domcontentloaded"

# Playwright refuses page.content() while a client-side redirect is in flight.
_NAVIGATING_MARKER = "page is navigating"


class Renderer:
    """Runs renders with a cap on how many browser sessions exist at once."""

    def __init__(
        self,
        settings: RenderSettings | None = None,
        browser_config: BrowserConfig | None = None,
        *,
        session_factory: SessionFactory = create_session,
    ) -> None:
        self.settings = settings or RenderSettings()
        self.browser_config = browser_config or BrowserConfig()
        self._session_factory = session_factory
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_renders)
        self._active = 0

    @property
    def active(self) -> int:
        """Number of renders currently holding a slot."""
        return self._active

    @property
    def capacity(self) -> int:
        return self.settings.max_concurrent_renders

    async def render(self, request: RenderRequest) -> RenderResult:
        """Render *request* and return the DOM snapshot.

        Raises:
            CapacityError: no slot freed up within ``queue_timeout_s``.
            NavigationError: both navigation phases failed.
            InternalError: browser launch failure or any other fault.
        """
        timeout_ms = self.settings.timeouts.clamp(request.timeout_ms)
        if timeout_ms != request.timeout_ms:
            logger.debug("Clamped timeout_ms %d -> %d", request.timeout_ms, timeout_ms)
            request = dataclasses.replace(request, timeout_ms=timeout_ms)

        started = time.monotonic()
        logger.info(
            "Render started: url=%s wait_until=%s timeout_ms=%d",
            request.url,
            request.wait_until.value,
            request.timeout_ms,
        )
        try:
            async with self._admission():
                result = await self._render_in_session(request)
        except NavigationError as exc:
            logger.warning("Render failed: url=%s reason=%s", request.url, exc)
            raise
        except RenderError as exc:
            logger.error("Render failed: url=%s reason=%s", request.url, exc)
            raise

        logger.info(
            "Render finished: url=%s final_url=%s status=%s html_bytes=%d duration_ms=%d",
            request.url,
            result.url,
            result.status,
            len(result.html.encode("utf-8")),
            (time.monotonic() - started) * 1000,
        )
        return result

    @asynccontextmanager
    async def _admission(self) -> AsyncIterator[None]:
        """Hold a limiter slot for the duration of the block."""
        try:
            async with asyncio.timeout(self.settings.queue_timeout_s):
                await self._semaphore.acquire()
        except TimeoutError as exc:
            raise CapacityError(
                f"Server busy: {self.capacity} renders already in progress",
                retry_after=self.settings.queue_timeout_s,
            ) from exc
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()

    async def _render_in_session(self, request: RenderRequest) -> RenderResult:
        launched = False
        try:
            async with self._session_factory(self.browser_config) as session:
                launched = True
                return await self._orchestrate(session, request)
        except RenderError:
            raise
        except Exception as exc:
            if not launched:
                logger.error("Browser launch failed", exc_info=True)
                raise InternalError(f"Browser failed to start: {describe_failure(exc)}") from exc
            logger.exception("Unexpected render fault: url=%s", request.url)
            raise InternalError(describe_failure(exc)) from exc

    async def _orchestrate(self, session: BrowserSession, request: RenderRequest) -> RenderResult:
        await session.block_resources()
        response = await self._navigate(session, request)
        await self._await_readiness(session.page, request)
        await asyncio.sleep(self.settings.settle_delay_ms / 1000)
        html = await self._extract(session.page, request)
        return RenderResult(
            html=html,
            url=session.page.url,
            status=response.status if response is not None else None,
        )

    async def _extract(self, page: Page, request: RenderRequest) -> str:
        """Serialize the DOM, retrying once if a client redirect is still in flight."""
        try:
            return await page.content()
        except PlaywrightError as exc:
            if _NAVIGATING_MARKER not in str(exc):
                raise
            logger.info("Page navigated during settle, waiting for the new document: url=%s", page.url)
        with suppress(PlaywrightError):
            await page.wait_for_load_state(
                _NAVIGATION_WAIT_UNTIL, timeout=self.settings.readiness_ceiling_ms(request.timeout_ms)
            )
        return await page.content()

    async def _navigate(self, session: BrowserSession, request: RenderRequest) -> Response | None:
        """Two-phase navigation: resource-blocked first, then unblocked once."""
        page = session.page
        try:
            return await page.goto(request.url, wait_until=_NAVIGATION_WAIT_UNTIL, timeout=request.timeout_ms)
        except Exception as exc:
            logger.warning(
                "Blocked navigation failed, retrying without blocking: url=%s reason=%s",
                request.url,
                describe_failure(exc),
            )

        await session.unblock_resources()
        try:
            return await page.goto(request.url, wait_until=_NAVIGATION_WAIT_UNTIL, timeout=request.timeout_ms)
        except Exception as exc:
            raise NavigationError(f"Navigation failed or timed out: {describe_failure(exc)}") from exc

    async def _await_readiness(self, page: Page, request: RenderRequest) -> bool:
        """Race the requested load state against a ceiling. Never raises on timeout.

        Returns True if the state was reached before the ceiling.
        """
        if request.wait_until is WaitUntil.DOMCONTENTLOADED:
            return True

        ceiling_ms = self.settings.readiness_ceiling_ms(request.timeout_ms)
        ready_task = asyncio.ensure_future(page.wait_for_load_state(request.wait_until.value, timeout=ceiling_ms))
        timer_task = asyncio.ensure_future(asyncio.sleep(ceiling_ms / 1000))
        try:
            done, _pending = await asyncio.wait({ready_task, timer_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (ready_task, timer_task):
                if not task.done():
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task

        if ready_task in done and not ready_task.cancelled():
            exc = ready_task.exception()
            if exc is None:
                logger.debug("Readiness reached: state=%s", request.wait_until.value)
                return True
            logger.info(
                "Readiness wait failed, continuing with current DOM: state=%s reason=%s",
                request.wait_until.value,
                describe_failure(exc),
            )
            return False

        logger.info(
            "Readiness ceiling reached (%dms), continuing with current DOM: state=%s",
            ceiling_ms,
            request.wait_until.value,
        )
        return False
