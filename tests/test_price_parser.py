"""Tests for price text parsing."""

import pytest

from pricewatch.ingest.price_parser import (
    detect_currency,
    parse_price,
    resolve_image_url,
    to_minor_units,
)


@pytest.mark.parametrize(
    "text,amount,currency",
    [
        ("$19.99", 1999, "USD"),
        ("$1,299.99", 129999, "USD"),
        ("$1,299", 129900, "USD"),
        ("1.299,00 €", 129900, "EUR"),
        ("€12,5", 1250, "EUR"),
        ("£ 1 299,00", 129900, "GBP"),
        ("A$45.00", 4500, "AUD"),
        ("Price: 89.00 GBP", 8900, "GBP"),
        ("1.234.567", 123456700, "USD"),
        ("Now only 7.", 700, "USD"),
    ],
)
def test_parse_price(text, amount, currency):
    parsed = parse_price(text)
    assert parsed is not None
    assert parsed.amount == amount
    assert parsed.currency == currency


@pytest.mark.parametrize("text", [None, "", "Out of stock", "Call for price"])
def test_parse_price_without_number(text):
    assert parse_price(text) is None


def test_multi_character_symbol_checked_before_dollar():
    assert detect_currency("C$10") == "CAD"
    assert detect_currency("US$10") == "USD"
    assert detect_currency("10 bucks") == "USD"


def test_to_minor_units():
    assert to_minor_units(19.99) == 1999
    assert to_minor_units("5") == 500
    assert to_minor_units(0.005) == 1
    assert to_minor_units(None) is None
    assert to_minor_units(True) is None
    assert to_minor_units(-1) is None
    assert to_minor_units("abc") is None


def test_resolve_image_url():
    page = "https://shop.example.com/p/123"
    assert resolve_image_url("/img/a.jpg", page) == "https://shop.example.com/img/a.jpg"
    assert resolve_image_url("//cdn.example.com/a.jpg", page) == "https://cdn.example.com/a.jpg"
    assert resolve_image_url("https://cdn.example.com/a.jpg", page) == "https://cdn.example.com/a.jpg"
    assert resolve_image_url("javascript:alert(1)", page) is None
    assert resolve_image_url("data:image/png;base64,AAAA", page) is None
    assert resolve_image_url("", page) is None
    assert resolve_image_url(None, page) is None
