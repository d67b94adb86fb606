"""Tiered price extractor.

Tries strategies cheapest first until one yields a complete record (title
and price):

1. static fetch and selector scan
2. rendered fetch and in-page selector scan, handing the rendered HTML to
   the AI extractor when the selectors come up short
3. cloud browser plus AI extraction, only when tier 2 could not load the page

Every tier's failure is logged with its tier tag; the caller only sees the
last attempted tier's error.
"""

import logging
import time
from typing import Optional, Protocol

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.ingest.base import (
    ExtractionOutcome,
    ExtractionResult,
    RenderedPage,
    Tier,
    TierAttempt,
)
from pricewatch.ingest.errors import (
    LOAD_ERRORS,
    ExtractionError,
    NetworkError,
    NoDataFound,
    ProviderError,
)

logger = logging.getLogger(__name__)


class StaticStrategy(Protocol):
    async def fetch(self, url: str) -> ExtractionResult: ...


class RenderedStrategy(Protocol):
    async def fetch(self, url: str) -> RenderedPage: ...


class StructuredStrategy(Protocol):
    async def extract(self, url: str, html: str, tier: Tier) -> ExtractionResult: ...


class CloudStrategy(Protocol):
    def is_configured(self) -> bool: ...

    async def fetch(self, url: str) -> str: ...


class TieredExtractor:
    """Runs the extraction fallback chain for one URL at a time."""

    def __init__(
        self,
        static: StaticStrategy,
        rendered: RenderedStrategy,
        structured: StructuredStrategy,
        cloud: Optional[CloudStrategy] = None,
        force_ai: Optional[bool] = None,
    ):
        self.static = static
        self.rendered = rendered
        self.structured = structured
        self.cloud = cloud
        self.force_ai = settings.force_ai_extraction if force_ai is None else force_ai

    def _record(
        self,
        outcome: ExtractionOutcome,
        tier: Tier,
        started: float,
        url: str,
        method: Optional[str] = None,
        error: Optional[ExtractionError] = None,
    ) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        outcome.attempts.append(
            TierAttempt(tier=tier, success=error is None, duration_ms=duration_ms, method=method, error=error)
        )
        metrics.record_tier_attempt(tier.value, error is None, duration_ms / 1000)
        if error is None:
            logger.info(f"[{tier.value}] Extracted {url} via {method} ({duration_ms:.0f}ms)")
        else:
            logger.warning(
                f"[{tier.value}] {type(error).__name__} for {url}: {error.message} ({duration_ms:.0f}ms)"
            )

    @staticmethod
    def _keep_partial(outcome: ExtractionOutcome, result: Optional[ExtractionResult]) -> None:
        if result is not None and (result.title or result.price is not None):
            outcome.partial = result

    async def extract(self, url: str) -> ExtractionOutcome:
        """Extract a complete product record or the last tier's typed error."""
        outcome = ExtractionOutcome()

        # Tier 1: static fetch
        started = time.monotonic()
        try:
            result = await self.static.fetch(url)
        except ExtractionError as e:
            self._record(outcome, Tier.STATIC, started, url, error=e)
        except Exception as e:
            error = NetworkError(url, f"Unexpected static fetch error: {e}", Tier.STATIC.value)
            self._record(outcome, Tier.STATIC, started, url, error=error)
        else:
            if result.is_complete:
                self._record(outcome, Tier.STATIC, started, url, method=result.method)
                outcome.result = result.tagged(Tier.STATIC)
                return outcome
            self._keep_partial(outcome, result)
            error = NoDataFound(url, "Static scan incomplete", Tier.STATIC.value)
            self._record(outcome, Tier.STATIC, started, url, error=error)

        # Tier 2: rendered fetch, then AI on the rendered HTML
        started = time.monotonic()
        try:
            page = await self.rendered.fetch(url)
        except ExtractionError as e:
            rendered_error: ExtractionError = e
        except Exception as e:
            rendered_error = NetworkError(url, f"Unexpected rendered fetch error: {e}", Tier.RENDERED.value)
        else:
            return await self._finish_rendered(url, page, started, outcome)

        self._record(outcome, Tier.RENDERED, started, url, error=rendered_error)
        if not isinstance(rendered_error, LOAD_ERRORS):
            # The page loaded; a cloud browser would see the same content
            outcome.error = rendered_error
            return outcome

        # Tier 3: cloud browser, only after a tier-2 load failure
        if self.cloud is None or not self.cloud.is_configured():
            logger.info(f"[{Tier.CLOUD.value}] Skipped for {url}: not configured")
            outcome.error = rendered_error
            return outcome

        started = time.monotonic()
        try:
            html = await self.cloud.fetch(url)
            result = await self.structured.extract(url, html, Tier.CLOUD)
        except ExtractionError as e:
            self._record(outcome, Tier.CLOUD, started, url, error=e)
            outcome.error = e
            return outcome
        except Exception as e:
            error = ProviderError(url, f"Unexpected cloud browser error: {e}", Tier.CLOUD.value)
            self._record(outcome, Tier.CLOUD, started, url, error=error)
            outcome.error = error
            return outcome

        return self._finish_ai(url, result, Tier.CLOUD, started, outcome)

    async def _finish_rendered(
        self,
        url: str,
        page: RenderedPage,
        started: float,
        outcome: ExtractionOutcome,
    ) -> ExtractionOutcome:
        if page.result.is_complete and not self.force_ai:
            self._record(outcome, Tier.RENDERED, started, url, method="selectors")
            outcome.result = page.result.tagged(Tier.RENDERED, "selectors")
            return outcome

        self._keep_partial(outcome, page.result)
        if self.force_ai:
            logger.debug(f"[{Tier.RENDERED.value}] AI extraction forced for {url}")
        else:
            logger.info(f"[{Tier.RENDERED.value}] Selectors incomplete for {url}, trying AI extraction")

        try:
            result = await self.structured.extract(url, page.html, Tier.RENDERED)
        except ExtractionError as e:
            self._record(outcome, Tier.RENDERED, started, url, method="ai", error=e)
            outcome.error = e
            return outcome
        except Exception as e:
            error = ProviderError(url, f"Unexpected AI extraction error: {e}", Tier.RENDERED.value)
            self._record(outcome, Tier.RENDERED, started, url, method="ai", error=error)
            outcome.error = error
            return outcome

        return self._finish_ai(url, result, Tier.RENDERED, started, outcome)

    def _finish_ai(
        self,
        url: str,
        result: ExtractionResult,
        tier: Tier,
        started: float,
        outcome: ExtractionOutcome,
    ) -> ExtractionOutcome:
        if result.is_complete:
            self._record(outcome, tier, started, url, method="ai")
            outcome.result = result.tagged(tier, "ai")
            return outcome

        self._keep_partial(outcome, result)
        missing = "price" if result.title else "title"
        error = NoDataFound(url, f"AI extraction incomplete (no {missing})", tier.value)
        self._record(outcome, tier, started, url, method="ai", error=error)
        outcome.error = error
        return outcome
