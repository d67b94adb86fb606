"""Headless browser fetcher (tier 2) for JavaScript-rendered pages."""

import asyncio
import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from pricewatch.config import settings
from pricewatch.ingest.base import ExtractionResult, RenderedPage, Tier
from pricewatch.ingest.browser_pool import BrowserPool
from pricewatch.ingest.content_analyzer import content_analyzer
from pricewatch.ingest.errors import BotWallError, FetchTimeoutError, NetworkError
from pricewatch.ingest.page_scan import (
    IMAGE_ATTRIBUTES,
    IMAGE_SELECTORS,
    PRICE_SELECTORS,
    TITLE_SELECTORS,
    scan_html,
)
from pricewatch.ingest.price_parser import parse_price, resolve_image_url

logger = logging.getLogger(__name__)

IN_PAGE_SCAN = """
({titleSelectors, priceSelectors, imageSelectors, imageAttributes}) => {
    const query = (selector) => {
        try { return document.querySelector(selector); } catch (e) { return null; }
    };
    const firstText = (selectors) => {
        for (const selector of selectors) {
            const el = query(selector);
            if (!el) continue;
            const value = (el.getAttribute('content') || el.textContent || '').trim();
            if (value) return value;
        }
        return null;
    };
    const firstImage = () => {
        for (const selector of imageSelectors) {
            const el = query(selector);
            if (!el) continue;
            for (const attr of imageAttributes) {
                const value = el.getAttribute(attr);
                if (value) return value;
            }
        }
        return null;
    };
    return {
        title: firstText(titleSelectors),
        price: firstText(priceSelectors),
        image: firstImage(),
    };
}
"""

HTML_LENGTH_SCRIPT = "() => document.documentElement ? document.documentElement.outerHTML.length : 0"


class HeadlessBrowserFetcher:
    """Navigate with a pooled browser context and scan the rendered DOM."""

    tier = Tier.RENDERED

    def __init__(self, pool: BrowserPool, timeout: Optional[int] = None):
        self.pool = pool
        self.timeout = timeout or settings.headless_browser_timeout

    async def fetch(self, url: str) -> RenderedPage:
        """
        Render a page and run the selector scan in-page.

        Returns the rendered HTML together with the (possibly incomplete)
        selector record.

        Raises:
            FetchTimeoutError: Navigation timed out
            BotWallError: Challenge page or blocked response
            NetworkError: Navigation failed or the page returned an error status
        """
        tier = self.tier.value
        async with self.pool.session() as context:
            page = await context.new_page()

            logger.debug(f"Navigating to {url}")
            try:
                response = await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self.timeout * 1000,
                )
            except PlaywrightTimeoutError as e:
                raise FetchTimeoutError(url, f"Navigation timed out after {self.timeout}s", tier) from e
            except PlaywrightError as e:
                raise NetworkError(url, f"Navigation failed: {e.message}", tier) from e

            status = response.status if response else None

            try:
                await page.wait_for_load_state(
                    "networkidle",
                    timeout=settings.headless_network_idle_timeout * 1000,
                )
            except PlaywrightTimeoutError:
                # Pages with long-polling never go idle
                logger.debug(f"Network idle not reached for {url}")

            await self._wait_for_dom_stability(page)

            try:
                html = await page.content()
            except PlaywrightError as e:
                raise NetworkError(url, f"Could not read rendered page: {e.message}", tier) from e

            analysis = content_analyzer.analyze(html, status)
            if analysis.is_blocked:
                raise BotWallError(
                    url,
                    f"Bot wall detected ({analysis.block_type})",
                    tier,
                    status_code=status,
                )
            if status is not None and status >= 400:
                raise NetworkError(url, f"HTTP {status}", tier)

            result = await self._scan_page(page, html, page.url or url)

        return RenderedPage(html=html, result=result.tagged(self.tier, "selectors"))

    async def _wait_for_dom_stability(self, page: Page) -> bool:
        """
        Wait until the document length stops changing.

        The DOM counts as stable once successive samples differ by less than
        the delta threshold for a full quiet window. Gives up after the max
        wait and carries on with whatever rendered.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        max_wait = settings.dom_stability_max_wait_ms / 1000
        quiet_window = settings.dom_stability_quiet_window_ms / 1000
        interval = settings.dom_stability_check_interval_ms / 1000

        last_length: Optional[int] = None
        stable_since: Optional[float] = None

        while loop.time() - started < max_wait:
            try:
                length = await page.evaluate(HTML_LENGTH_SCRIPT)
            except PlaywrightError as e:
                logger.debug(f"DOM stability check aborted: {e.message}")
                return False

            now = loop.time()
            if last_length is not None and abs(length - last_length) < settings.dom_stability_delta_threshold:
                if stable_since is None:
                    stable_since = now
                elif now - stable_since >= quiet_window:
                    return True
            else:
                stable_since = None
            last_length = length
            await asyncio.sleep(interval)

        logger.debug(f"DOM did not settle within {max_wait:.1f}s")
        return False

    async def _scan_page(self, page: Page, html: str, page_url: str) -> ExtractionResult:
        try:
            found = await page.evaluate(
                IN_PAGE_SCAN,
                {
                    "titleSelectors": TITLE_SELECTORS,
                    "priceSelectors": PRICE_SELECTORS,
                    "imageSelectors": IMAGE_SELECTORS,
                    "imageAttributes": list(IMAGE_ATTRIBUTES),
                },
            )
        except PlaywrightError as e:
            logger.debug(f"In-page scan failed, using rendered HTML only: {e.message}")
            found = {}

        result = ExtractionResult(title=found.get("title"))
        parsed = parse_price(found.get("price"))
        if parsed:
            result.price = parsed.amount
            result.currency = parsed.currency
        result.image_url = resolve_image_url(found.get("image"), page_url)

        if not result.is_complete or not result.image_url:
            # Meta tags and JSON-LD in the rendered document
            fallback = scan_html(html, page_url)
            if not result.title:
                result.title = fallback.title
            if result.price is None and fallback.price is not None:
                result.price = fallback.price
                result.currency = fallback.currency
            if not result.image_url:
                result.image_url = fallback.image_url

        return result
