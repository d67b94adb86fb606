"""Anti-automation countermeasures for Playwright contexts.

Hides the webdriver flag and other automation tells, and supplies launch
arguments and context options that look like a regular desktop Chrome.
"""

import logging
import random
from typing import Any, Dict

from playwright.async_api import BrowserContext

from pricewatch.ingest.fetchers.static import USER_AGENTS

logger = logging.getLogger(__name__)

STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]

STEALTH_SCRIPTS = [
    # Hide webdriver property
    """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });
    """,

    # Override permissions
    """
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
    """,

    # Mock plugins
    """
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5]
    });
    """,

    # Mock languages
    """
    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });
    """,

    # Chrome runtime
    """
    window.chrome = {
        runtime: {}
    };
    """,
]


class StealthBrowser:
    """Context options and init scripts that mask headless automation."""

    def get_stealth_context_options(self) -> Dict[str, Any]:
        """
        Get Playwright context options with stealth settings.

        Returns:
            Dict of context options
        """
        return {
            "viewport": {"width": 1280, "height": 720},
            "locale": "en-US",
            "timezone_id": "America/New_York",
            "user_agent": random.choice(USER_AGENTS),
            "ignore_https_errors": True,
            "bypass_csp": True,
        }

    async def apply(self, context: BrowserContext) -> None:
        """Register the stealth init scripts on every page of the context."""
        for script in STEALTH_SCRIPTS:
            try:
                await context.add_init_script(script)
            except Exception as e:
                logger.debug(f"Error injecting stealth script: {e}")


# Global stealth browser instance
stealth_browser = StealthBrowser()
