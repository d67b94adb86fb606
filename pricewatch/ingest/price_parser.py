"""Shared numeric-currency parser used by every extraction tier."""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
from urllib.parse import urljoin, urlparse

# Multi-character symbols first so "A$" is not read as "$"
CURRENCY_SYMBOLS = [
    ("A$", "AUD"),
    ("C$", "CAD"),
    ("US$", "USD"),
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("₽", "RUB"),
    ("₩", "KRW"),
    ("฿", "THB"),
]

ISO_CODE_PATTERN = re.compile(r"\b(USD|EUR|GBP|JPY|INR|AUD|CAD)\b", re.IGNORECASE)
NUMBER_PATTERN = re.compile(r"\d[\d.,]*")
# "1 299,00", "1'299.00", "1 299" with thin or non-breaking spaces
GROUP_SEPARATOR_PATTERN = re.compile(r"(?<=\d)[ \u00a0\u202f'](?=\d{3}(?!\d))")

DEFAULT_CURRENCY = "USD"
BLOCKED_URL_SCHEMES = ("javascript:", "data:", "file:", "vbscript:", "about:")


@dataclass(frozen=True)
class ParsedPrice:
    amount: int  # minor units
    currency: str


def detect_currency(text: str) -> str:
    """ISO codes win over symbols; unknown text defaults to USD."""
    iso = ISO_CODE_PATTERN.search(text)
    if iso:
        return iso.group(1).upper()
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code
    return DEFAULT_CURRENCY


def _normalize_number(number: str) -> str:
    last_comma = number.rfind(",")
    last_period = number.rfind(".")

    if last_comma >= 0 and last_period >= 0:
        # The later separator is the decimal point
        if last_comma > last_period:
            return number.replace(".", "").replace(",", ".")
        return number.replace(",", "")

    if last_comma >= 0:
        if len(number) - last_comma - 1 == 3:
            return number.replace(",", "")
        head, _, tail = number.rpartition(",")
        return head.replace(",", "") + "." + tail

    if number.count(".") > 1:
        head, _, tail = number.rpartition(".")
        if len(tail) == 3:
            return number.replace(".", "")
        return head.replace(".", "") + "." + tail

    return number


def parse_price(text: Optional[str]) -> Optional[ParsedPrice]:
    """
    Parse a display price such as "$1,299.99" or "1.299,00 €".

    Returns None when no number can be read. Amounts are returned in
    hundredths of the currency unit.
    """
    if not text:
        return None

    cleaned = GROUP_SEPARATOR_PATTERN.sub("", text)
    match = NUMBER_PATTERN.search(cleaned)
    if not match:
        return None

    number = _normalize_number(match.group(0).rstrip(".,"))
    try:
        value = Decimal(number)
    except InvalidOperation:
        return None

    amount = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return ParsedPrice(amount=amount, currency=detect_currency(text))


def to_minor_units(value) -> Optional[int]:
    """Convert a numeric major-unit amount (e.g. 19.99) to minor units."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if amount < 0:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_image_url(src: Optional[str], page_url: str) -> Optional[str]:
    """Resolve an image reference against the page URL; only http(s) survives."""
    if not src:
        return None
    src = src.strip()
    if not src or src.lower().startswith(BLOCKED_URL_SCHEMES):
        return None
    if src.startswith("//"):
        src = "https:" + src

    resolved = urljoin(page_url, src)
    parsed = urlparse(resolved)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return resolved
