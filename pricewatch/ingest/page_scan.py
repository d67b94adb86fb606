"""Ordered selector scan over product page HTML.

Selector lists are tried in order and the first match wins. The same lists
drive the in-page scan of the rendered tier.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from selectolax.parser import HTMLParser, Node

from pricewatch.ingest.base import ExtractionResult
from pricewatch.ingest.price_parser import (
    DEFAULT_CURRENCY,
    parse_price,
    resolve_image_url,
    to_minor_units,
)

logger = logging.getLogger(__name__)

TITLE_SELECTORS = [
    'h1[data-testid="product-title"]',
    '#productTitle',
    'h1.product-title',
    'h1[itemprop="name"]',
    '.product-name h1',
    '.product_main h1',
    'h1',
]

PRICE_SELECTORS = [
    '[data-testid="price"]',
    '.price-current',
    '#priceblock_ourprice',
    '#priceblock_dealprice',
    '.a-price .a-offscreen',
    '.product-price',
    '[itemprop="price"]',
    '.price_color',
    '.price',
]

IMAGE_SELECTORS = [
    '#landingImage',
    '#imgTagWrapperId img',
    '[data-testid="product-image"] img',
    '.product-image img',
    '[itemprop="image"]',
    '.thumbnail img',
    '.gallery img:first-child',
    '.product_gallery img',
]

IMAGE_ATTRIBUTES = ("src", "data-src", "data-old-hires")

META_TITLE_SELECTORS = ['meta[property="og:title"]', 'meta[name="twitter:title"]']
META_PRICE_SELECTORS = [
    'meta[property="product:price:amount"]',
    'meta[property="og:price:amount"]',
]
META_CURRENCY_SELECTORS = [
    'meta[property="product:price:currency"]',
    'meta[property="og:price:currency"]',
    'meta[itemprop="priceCurrency"]',
]
META_IMAGE_SELECTORS = ['meta[property="og:image"]']


def _node_value(node: Node) -> Optional[str]:
    value = node.attributes.get("content") or node.text(strip=True)
    return value.strip() if value else None


def _first_value(parser: HTMLParser, selectors: List[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return (selector, value) for the first selector with a non-empty match."""
    for selector in selectors:
        try:
            node = parser.css_first(selector)
        except Exception as e:
            logger.debug(f"Selector error: {selector[:50]} - {e}")
            continue
        if node is None:
            continue
        value = _node_value(node)
        if value:
            return selector, value
    return None, None


def _first_image(parser: HTMLParser, page_url: str) -> Optional[str]:
    for selector in IMAGE_SELECTORS:
        try:
            node = parser.css_first(selector)
        except Exception:
            continue
        if node is None:
            continue
        for attribute in IMAGE_ATTRIBUTES + ("content",):
            resolved = resolve_image_url(node.attributes.get(attribute), page_url)
            if resolved:
                return resolved
    return None


def _iter_json_ld(parser: HTMLParser):
    for node in parser.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(node.text())
        except (ValueError, TypeError):
            continue
        stack: List[Any] = [data]
        while stack:
            item = stack.pop()
            if isinstance(item, list):
                stack.extend(item)
            elif isinstance(item, dict):
                if "@graph" in item:
                    stack.append(item["@graph"])
                yield item


def _json_ld_product(parser: HTMLParser) -> Optional[Dict[str, Any]]:
    for item in _iter_json_ld(parser):
        item_type = item.get("@type")
        types = item_type if isinstance(item_type, list) else [item_type]
        if "Product" in types:
            return item
    return None


def _apply_json_ld(parser: HTMLParser, result: ExtractionResult, page_url: str) -> None:
    product = _json_ld_product(parser)
    if product is None:
        return

    if not result.title and isinstance(product.get("name"), str):
        result.title = product["name"].strip() or None

    if result.price is None:
        offers = product.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        if isinstance(offers, dict):
            price = offers.get("price", offers.get("lowPrice"))
            if isinstance(price, str):
                parsed = parse_price(price)
                amount = parsed.amount if parsed else None
            else:
                amount = to_minor_units(price)
            if amount is not None:
                result.price = amount
                currency = offers.get("priceCurrency")
                if isinstance(currency, str) and len(currency) == 3:
                    result.currency = currency.upper()

    if not result.image_url:
        image = product.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url")
        if isinstance(image, str):
            result.image_url = resolve_image_url(image, page_url)


def scan_html(html: str, page_url: str) -> ExtractionResult:
    """
    Scan page HTML for title, price and image.

    Visible elements come first, then meta tags and JSON-LD fill whatever is
    still missing. Never raises for odd markup: fields simply stay empty.
    """
    parser = HTMLParser(html)
    result = ExtractionResult()

    _, result.title = _first_value(parser, TITLE_SELECTORS)

    price_selector, price_text = _first_value(parser, PRICE_SELECTORS)
    if price_text:
        parsed = parse_price(price_text)
        if parsed:
            result.price = parsed.amount
            result.currency = parsed.currency
        else:
            logger.debug(f"Unparsable price text from {price_selector}: {price_text[:40]!r}")

    result.image_url = _first_image(parser, page_url)

    if not result.title:
        _, result.title = _first_value(parser, META_TITLE_SELECTORS)

    if result.price is None:
        _, meta_price = _first_value(parser, META_PRICE_SELECTORS)
        parsed = parse_price(meta_price)
        if parsed:
            result.price = parsed.amount
            _, meta_currency = _first_value(parser, META_CURRENCY_SELECTORS)
            result.currency = (
                meta_currency.upper() if meta_currency and len(meta_currency) == 3
                else parsed.currency
            )

    if not result.image_url:
        _, meta_image = _first_value(parser, META_IMAGE_SELECTORS)
        result.image_url = resolve_image_url(meta_image, page_url)

    if not result.is_complete:
        _apply_json_ld(parser, result, page_url)

    if not result.currency:
        result.currency = DEFAULT_CURRENCY
    return result
