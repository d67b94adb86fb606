"""Shared types for the extraction tiers."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

from pricewatch.ingest.errors import ExtractionError


class Tier(Enum):
    """Extraction tiers, cheapest first."""
    STATIC = "static"
    RENDERED = "rendered"
    CLOUD = "cloud"

    @property
    def number(self) -> int:
        return {Tier.STATIC: 1, Tier.RENDERED: 2, Tier.CLOUD: 3}[self]


@dataclass
class ExtractionResult:
    """Structured data pulled from one product page."""
    title: Optional[str] = None
    price: Optional[int] = None  # minor units
    currency: str = "USD"
    image_url: Optional[str] = None
    tier: Optional[Tier] = None
    method: str = "selectors"  # selectors or ai

    @property
    def is_complete(self) -> bool:
        return bool(self.title) and self.price is not None

    def tagged(self, tier: Tier, method: Optional[str] = None) -> "ExtractionResult":
        return replace(self, tier=tier, method=method or self.method)


@dataclass
class TierAttempt:
    """Record of one tier attempt, kept for logs and tests."""
    tier: Tier
    success: bool
    duration_ms: float
    method: Optional[str] = None
    error: Optional[ExtractionError] = None


@dataclass
class RenderedPage:
    """Output of a rendered fetch that loaded the page."""
    html: str
    result: ExtractionResult


@dataclass
class ExtractionOutcome:
    """Result of the tiered extractor: a complete result or the last tier's error."""
    result: Optional[ExtractionResult] = None
    error: Optional[ExtractionError] = None
    attempts: List[TierAttempt] = field(default_factory=list)
    partial: Optional[ExtractionResult] = None  # best incomplete record seen

    @property
    def success(self) -> bool:
        return self.result is not None

    @property
    def attempted_tiers(self) -> List[Tier]:
        return [attempt.tier for attempt in self.attempts]
