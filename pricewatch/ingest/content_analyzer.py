"""Content analyzer for bot-wall detection.

Distinguishes challenge and block pages from real product pages so a tier can
report ``BotWallError`` instead of an empty extraction.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)

# Visible text shorter than this is typical of an interstitial page
SHORT_PAGE_TEXT_LENGTH = 2000


@dataclass
class ContentAnalysis:
    """Result of content analysis."""

    is_blocked: bool                    # Detected bot challenge or block
    block_type: Optional[str]           # captcha, cloudflare, access_denied, rate_limit, ...
    page_title: Optional[str]           # Page title for debugging
    content_length: int                 # Length of HTML content
    text_length: int                    # Length of visible text


# Patterns that suggest the page is blocked or a bot challenge
BLOCK_PATTERNS = [
    # CAPTCHA indicators
    (r'enter the characters', 'captcha'),
    (r'prove you\'?re not a robot', 'captcha'),
    (r'captcha', 'captcha'),
    (r'verify you are a human', 'captcha'),
    (r'robot check', 'captcha'),
    (r'unusual traffic', 'captcha'),

    # Cloudflare
    (r'checking your browser', 'cloudflare'),
    (r'just a moment\.\.\.', 'cloudflare'),
    (r'please wait while we verify', 'cloudflare'),
    (r'attention required', 'cloudflare'),

    # Rate limiting / blocking
    (r'access denied', 'access_denied'),
    (r'forbidden', 'access_denied'),
    (r'request has been blocked', 'rate_limit'),
    (r'too many requests', 'rate_limit'),

    # Bot detection
    (r'automation tools', 'bot_detected'),
    (r'pardon our interruption', 'bot_detected'),
    (r'press (?:&|and) hold', 'perimeter_x'),
]


class ContentAnalyzer:
    """Analyzes fetched HTML for bot walls."""

    def __init__(self):
        self._block_patterns = [
            (re.compile(pattern, re.IGNORECASE), block_type)
            for pattern, block_type in BLOCK_PATTERNS
        ]

    def analyze(self, html: str, status_code: Optional[int] = None) -> ContentAnalysis:
        """
        Analyze a response body.

        An error status with a suspicious (or near-empty) body is a block;
        an error status on a full page is left to the caller.
        A 2xx page is only treated as a block when it is short and matches a
        challenge pattern, since full product pages often mention "captcha"
        in scripts or footers.
        """
        if not html:
            return ContentAnalysis(
                is_blocked=bool(status_code and status_code >= 400),
                block_type=f"http_{status_code}" if status_code and status_code >= 400 else None,
                page_title=None,
                content_length=0,
                text_length=0,
            )

        parser = HTMLParser(html)
        title_elem = parser.css_first('title')
        page_title = title_elem.text(strip=True) if title_elem else None

        for node in parser.css('script, style, noscript'):
            node.decompose()
        body = parser.body
        text = body.text(separator=' ', strip=True) if body else ''

        block_type = self._detect_block(text, page_title)
        is_error_status = status_code is not None and status_code >= 400
        is_short = len(text) < SHORT_PAGE_TEXT_LENGTH

        if is_error_status:
            is_blocked = block_type is not None or is_short
            if is_blocked and block_type is None:
                block_type = f"http_{status_code}"
        else:
            is_blocked = block_type is not None and is_short
            if not is_blocked:
                block_type = None

        if is_blocked:
            logger.debug(f"Detected block type: {block_type} (status={status_code}, title={page_title!r})")

        return ContentAnalysis(
            is_blocked=is_blocked,
            block_type=block_type,
            page_title=page_title,
            content_length=len(html),
            text_length=len(text),
        )

    def _detect_block(self, text: str, page_title: Optional[str]) -> Optional[str]:
        content = text.lower()
        if page_title:
            content = f"{page_title.lower()} {content}"

        for pattern, block_type in self._block_patterns:
            if pattern.search(content):
                return block_type
        return None


# Global content analyzer instance
content_analyzer = ContentAnalyzer()
