"""Pooled Playwright browser contexts for the rendered tier.

One Chromium process per worker process, launched lazily. Contexts are handed
out exclusively through ``session()``, so concurrent checks never share one,
and the pool is sized to the worker concurrency.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, Route, async_playwright

from pricewatch.config import settings
from pricewatch.ingest.stealth import STEALTH_ARGS, stealth_browser

logger = logging.getLogger(__name__)


class BrowserPool:
    """Bounded pool of reusable browser contexts."""

    def __init__(self, size: Optional[int] = None):
        self.size = max(1, size or settings.worker_concurrency)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._init_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.size)
        self._idle: List[BrowserContext] = []
        self._closed = False

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    async def _ensure_browser(self) -> Browser:
        """Launch Chromium on first use."""
        async with self._init_lock:
            if self._closed:
                raise RuntimeError("Browser pool is closed")
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            if self._browser is None or not self._browser.is_connected():
                logger.info(f"Launching headless Chromium (pool size {self.size})")
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=STEALTH_ARGS,
                )
            return self._browser

    async def _block_heavy_resources(self, route: Route) -> None:
        if route.request.resource_type in settings.headless_blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    async def _new_context(self) -> BrowserContext:
        browser = await self._ensure_browser()
        context = await browser.new_context(**stealth_browser.get_stealth_context_options())
        await stealth_browser.apply(context)
        await context.route("**/*", self._block_heavy_resources)
        return context

    async def _discard(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except Exception as e:
            logger.debug(f"Error closing browser context: {e}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[BrowserContext]:
        """
        Acquire a context for exclusive use.

        The context returns to the pool on a clean exit and is discarded when
        the body raised, so a wedged or crashed context is never reused.
        """
        async with self._semaphore:
            context = self._idle.pop() if self._idle else await self._new_context()
            healthy = False
            try:
                yield context
                healthy = True
            finally:
                if healthy and not self._closed:
                    for page in list(context.pages):
                        try:
                            await page.close()
                        except Exception as e:
                            logger.debug(f"Error closing page: {e}")
                    self._idle.append(context)
                else:
                    await self._discard(context)

    async def close(self):
        """Close every context, the browser and Playwright."""
        async with self._init_lock:
            self._closed = True
            idle, self._idle = self._idle, []
            for context in idle:
                await self._discard(context)

            if self._browser:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.error(f"Error closing browser: {e}")
                self._browser = None

            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Browser pool closed")
