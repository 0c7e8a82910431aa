"""
Browser Handle
==============
One exclusively-owned headless browser: Playwright driver + Chromium +
a single BrowserContext.

The handle launches lazily (first ``new_page()``) so sessions obtained
through the password grant never pay for a browser they might not use.
``close()`` is idempotent and tolerates a partially launched state; it is
the only place a browser is released.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from ..run_config import ServiceConfig
from ..errors import ResourceError

logger = logging.getLogger(__name__)


class BrowserHandle:
    """Lazily launched Chromium instance owned by one session."""

    def __init__(self, config: ServiceConfig):
        self.config = config
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._launch_lock = asyncio.Lock()
        self._closed = False

    # ── State ─────────────────────────────────────────────────────

    @property
    def is_launched(self) -> bool:
        return self._context is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            raise ResourceError("browser not launched")
        return self._context

    # ── Lifecycle ─────────────────────────────────────────────────

    async def launch(self) -> BrowserContext:
        """Start the browser if needed and return its context."""
        async with self._launch_lock:
            if self._closed:
                raise ResourceError("browser handle already closed")
            if self._context is not None:
                return self._context

            logger.info(
                f"[BROWSER] Launching Chromium (headless={self.config.headless})"
            )
            try:
                self._playwright = await async_playwright().start()
                launch_kwargs = dict(
                    headless=self.config.headless,
                    args=self.config.launch_args,
                )
                if self.config.executable_path:
                    launch_kwargs["executable_path"] = self.config.executable_path
                self._browser = await self._playwright.chromium.launch(**launch_kwargs)
                self._context = await self._browser.new_context(
                    viewport={
                        "width": self.config.viewport_width,
                        "height": self.config.viewport_height,
                    },
                    user_agent=self.config.user_agent,
                    locale=self.config.locale,
                    timezone_id=self.config.timezone_id,
                )
                self._context.set_default_timeout(self.config.timeout_ms)
            except Exception as exc:
                logger.error(f"[BROWSER] Launch failed: {exc}")
                await self._release()
                raise ResourceError(f"browser launch failed: {exc}") from exc

            if self._closed:
                # close() ran while we were launching
                await self._release()
                raise ResourceError("browser handle closed during launch")

            return self._context

    async def new_page(self) -> Page:
        context = await self.launch()
        return await context.new_page()

    async def primary_page(self) -> Page:
        """Most recently opened live page, or a fresh one."""
        context = await self.launch()
        for page in reversed(context.pages):
            if not page.is_closed():
                return page
        return await context.new_page()

    async def set_bearer(self, token: str) -> None:
        """Send ``Authorization: Bearer <token>`` with every request."""
        context = await self.launch()
        await context.set_extra_http_headers({"Authorization": f"Bearer {token}"})

    async def clear_cookies(self) -> None:
        """Drop every cookie of the context (SSO login state included)."""
        if self._context is not None:
            await self._context.clear_cookies()

    async def close(self) -> None:
        """Release everything; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        was_launched = self._playwright is not None
        await self._release()
        if was_launched:
            logger.info("[BROWSER] Browser closed")

    async def _release(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except Exception as e:
                logger.debug(f"[BROWSER] Context close error: {e}")
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"[BROWSER] Browser close error: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"[BROWSER] Driver stop error: {e}")
        self._context = None
        self._browser = None
        self._playwright = None
