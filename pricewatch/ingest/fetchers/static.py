"""Static HTML fetcher (tier 1)."""

import logging
import random
from typing import Optional

import httpx

from pricewatch.config import settings
from pricewatch.ingest.base import ExtractionResult, Tier
from pricewatch.ingest.content_analyzer import content_analyzer
from pricewatch.ingest.errors import BotWallError, FetchTimeoutError, NetworkError
from pricewatch.ingest.page_scan import scan_html

logger = logging.getLogger(__name__)

# User agents for rotation
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "max-age=0",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}


class StaticHTMLFetcher:
    """Plain HTTP GET plus selector scan. Incomplete pages are returned, not raised."""

    tier = Tier.STATIC

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.static_fetch_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={**BROWSER_HEADERS, "User-Agent": random.choice(USER_AGENTS)},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> ExtractionResult:
        """
        Fetch a page and scan it.

        Raises:
            FetchTimeoutError: The response did not arrive in time
            BotWallError: Error status with a challenge or near-empty body
            NetworkError: Connection failure or any other error status
        """
        client = await self._get_client()
        tier = self.tier.value

        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(url, f"Static fetch timed out after {self.timeout}s", tier) from e
        except httpx.HTTPError as e:
            raise NetworkError(url, f"{type(e).__name__}: {e}", tier) from e

        html = response.text
        if response.status_code >= 400:
            analysis = content_analyzer.analyze(html, response.status_code)
            if analysis.is_blocked:
                raise BotWallError(
                    url,
                    f"HTTP {response.status_code} ({analysis.block_type})",
                    tier,
                    status_code=response.status_code,
                )
            raise NetworkError(url, f"HTTP {response.status_code}", tier)

        result = scan_html(html, str(response.url))
        logger.debug(
            f"Static scan of {url}: title={'yes' if result.title else 'no'}, "
            f"price={result.price}"
        )
        return result.tagged(self.tier, "selectors")
