"""Remote browser fetcher (tier 3) using Browserless BrowserQL."""

import json
import logging
from typing import Optional

import httpx

from pricewatch.config import settings
from pricewatch.ingest.base import Tier
from pricewatch.ingest.errors import FetchTimeoutError, NetworkError, ProviderError

logger = logging.getLogger(__name__)

# Extra HTTP budget on top of the in-browser navigation timeout
HTTP_TIMEOUT_BUFFER_MS = 10000

BQL_QUERY = """
mutation GetPageData {{
  viewport(width: 1366, height: 768) {{
    width
    height
    time
  }}
  goto(
    url: {url}
    waitUntil: load
    timeout: {timeout}
  ) {{
    status
  }}
  pageContent: html(
    clean: {{
      removeNonTextNodes: false
      removeAttributes: true
      removeRegex: true
    }}
  ) {{
    html
  }}
}}
"""


class CloudBrowserFetcher:
    """Render a page on Browserless through a residential proxy."""

    tier = Tier.CLOUD

    def __init__(self):
        self._client: Optional[httpx.AsyncClient] = None

    @staticmethod
    def is_configured() -> bool:
        return settings.browserless_configured

    def _build_url(self) -> str:
        return (
            f"{settings.browserless_endpoint}?token={settings.browserless_token}"
            f"{settings.browserless_proxy_string}{settings.browserless_options_string}"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=(settings.browserless_timeout_ms + HTTP_TIMEOUT_BUFFER_MS) / 1000,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> str:
        """
        Return rendered HTML for ``url``.

        A navigation error reported alongside HTML (e.g. a load timeout after
        the document arrived) still returns the HTML.

        Raises:
            ProviderError: Not configured, service error or no HTML returned
            FetchTimeoutError: The service did not answer in time
            NetworkError: Connection failure or the page returned an error status
        """
        tier = self.tier.value
        if not self.is_configured():
            raise ProviderError(url, "Cloud browser not configured", tier)

        client = await self._get_client()
        query = BQL_QUERY.format(url=json.dumps(url), timeout=settings.browserless_timeout_ms)
        logger.info(f"[{tier}] Fetching {url}")

        try:
            response = await client.post(
                self._build_url(),
                json={"query": query, "operationName": "GetPageData"},
            )
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(url, "Cloud browser request timed out", tier) from e
        except httpx.HTTPError as e:
            raise NetworkError(url, f"Cloud browser request failed: {e}", tier) from e

        if response.status_code >= 400:
            raise ProviderError(url, f"BrowserQL HTTP error: {response.status_code}", tier)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(url, "BrowserQL returned invalid JSON", tier) from e

        data = payload.get("data") or {}
        html = (data.get("pageContent") or {}).get("html")
        status = (data.get("goto") or {}).get("status")
        errors = payload.get("errors") or []
        error_message = errors[0].get("message") if errors else None

        if status and status >= 400:
            raise NetworkError(url, f"Page returned HTTP {status}", tier)

        if html:
            if error_message:
                logger.info(f"[{tier}] Error reported but HTML received, continuing: {error_message}")
            logger.info(f"[{tier}] Received {len(html)} chars")
            return html

        raise ProviderError(url, f"BrowserQL failed: {error_message or 'no HTML content received'}", tier)
