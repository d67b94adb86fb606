"""Typed extraction failures.

Every tier raises one of these; the worker stores ``reason`` on the check job.
"""

from typing import Optional


class ExtractionError(Exception):
    """Base class for extraction failures."""

    reason = "extraction_error"

    def __init__(self, url: str, message: str, tier: Optional[str] = None):
        self.url = url
        self.message = message
        self.tier = tier
        super().__init__(f"{message} ({url})")


class NetworkError(ExtractionError):
    """Connection or navigation failure."""

    reason = "network_error"


class FetchTimeoutError(ExtractionError):
    """The tier exceeded its response or navigation timeout."""

    reason = "timeout"


class BotWallError(ExtractionError):
    """HTTP error status or a challenge page with a suspicious body."""

    reason = "bot_wall"

    def __init__(
        self,
        url: str,
        message: str,
        tier: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.status_code = status_code
        super().__init__(url, message, tier)


class NoDataFound(ExtractionError):
    """The page loaded but neither title nor price could be extracted."""

    reason = "no_data"


class ProviderError(ExtractionError):
    """The AI model or the cloud browser service failed."""

    reason = "provider_error"


# Failures that mean a tier never got a usable page
LOAD_ERRORS = (NetworkError, FetchTimeoutError, BotWallError)
