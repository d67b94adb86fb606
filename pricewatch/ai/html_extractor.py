"""Structured product extraction from rendered HTML using the LLM."""

import logging
import re
from typing import Optional

from selectolax.parser import HTMLParser

from pricewatch.ai.llm_service import LLMService, llm_service
from pricewatch.config import settings
from pricewatch.ingest.base import ExtractionResult, Tier
from pricewatch.ingest.errors import NoDataFound, ProviderError
from pricewatch.ingest.price_parser import DEFAULT_CURRENCY, resolve_image_url, to_minor_units

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... [truncated]"

PRODUCT_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {
            "type": ["string", "null"],
            "description": "The product name/title",
        },
        "price": {
            "type": ["number", "null"],
            "description": "The current price as a decimal number (e.g., 19.99)",
        },
        "currency": {
            "type": ["string", "null"],
            "description": "The ISO currency code (USD, EUR, GBP, AUD, etc.)",
        },
        "image_url": {
            "type": ["string", "null"],
            "description": "The main product image URL (full https:// URL, not a relative path)",
        },
    },
    "required": ["title", "price", "currency", "image_url"],
    "additionalProperties": False,
}

SYSTEM_PROMPT = "You extract product data from e-commerce HTML. Answer only with the requested JSON."

EXTRACTION_PROMPT = """Extract product information from this HTML.
Find the product title, current price (as a number without currency symbol), currency code, and main product image URL.

Instructions:
- If there are multiple prices, extract the main/current/discounted selling price. It is not the original price, not a unit price and not a crossed-out price.
- For image_url, extract the main product image URL (look for <img> tags with src or data-src attributes).
- The image_url should be a complete URL starting with https:// (not a relative path like /images/product.jpg).
- Use null for anything you cannot find.

HTML content:
{html}"""


def _content_block(parser: HTMLParser) -> str:
    """Pick main, then article, then body; small blocks fall through."""
    for tag in ("main", "article"):
        node = parser.css_first(tag)
        if node is None:
            continue
        html = node.html or ""
        if len(html) >= settings.ai_min_content_chars:
            return html
        logger.debug(f"<{tag}> content too small ({len(html)} chars), trying broader block")

    body = parser.body
    if body is not None and body.html:
        return body.html
    return parser.html or ""


def prepare_html_for_ai(html: str, max_chars: Optional[int] = None) -> str:
    """
    Strip scripts (keeping JSON-LD), styles, noscript and iframes, keep the
    main content block, collapse whitespace and truncate.
    """
    max_chars = max_chars or settings.ai_max_html_chars
    parser = HTMLParser(html)

    for node in parser.css("script"):
        if (node.attributes.get("type") or "").lower() != "application/ld+json":
            node.decompose()
    for node in parser.css("style, noscript, iframe"):
        node.decompose()

    block = _content_block(parser)
    # JSON-LD usually sits in <head>, outside the chosen block
    json_ld = [
        node.html for node in parser.css('script[type="application/ld+json"]')
        if node.html and node.html not in block
    ]
    content = re.sub(r"\s+", " ", " ".join(json_ld + [block])).strip()
    if len(content) > max_chars:
        content = content[:max_chars] + TRUNCATION_MARKER
    return content


class HtmlStructuredExtractor:
    """Ask the model for {title, price, currency, image_url} from page HTML."""

    def __init__(self, service: Optional[LLMService] = None):
        self.service = service or llm_service

    async def extract(self, url: str, html: str, tier: Tier) -> ExtractionResult:
        """
        Extract a product record.

        Raises:
            ProviderError: The model call failed or is not configured
            NoDataFound: The model found neither title nor price
        """
        tier_name = tier.value
        prepared = prepare_html_for_ai(html)
        logger.info(f"[{tier_name}] Sending {len(prepared)} chars to {settings.llm_model} for {url}")

        try:
            data = await self.service.call_llm_structured(
                prompt=EXTRACTION_PROMPT.format(html=prepared),
                response_schema=PRODUCT_SCHEMA,
                schema_name="product_data",
                system_prompt=SYSTEM_PROMPT,
            )
        except Exception as e:
            raise ProviderError(url, f"AI extraction error: {e}", tier_name) from e

        title = data.get("title")
        title = title.strip() if isinstance(title, str) and title.strip() else None
        price = to_minor_units(data.get("price"))

        if title is None and price is None:
            raise NoDataFound(url, "AI extraction found no title or price", tier_name)

        currency = data.get("currency")
        currency = currency.strip().upper() if isinstance(currency, str) and len(currency.strip()) == 3 else DEFAULT_CURRENCY

        return ExtractionResult(
            title=title,
            price=price,
            currency=currency,
            image_url=resolve_image_url(data.get("image_url"), url),
            tier=tier,
            method="ai",
        )
