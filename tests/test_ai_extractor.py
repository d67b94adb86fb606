"""Tests for AI-based structured extraction."""

import pytest

from pricewatch.ai.html_extractor import (
    TRUNCATION_MARKER,
    HtmlStructuredExtractor,
    prepare_html_for_ai,
)
from pricewatch.ingest.base import Tier
from pricewatch.ingest.errors import NoDataFound, ProviderError

URL = "https://shop.example.com/p/kettle"

PAGE = """
<html>
<head>
  <script type="application/ld+json">{"@type": "Product", "name": "Kettle"}</script>
  <script>window.tracking = true;</script>
  <style>.price { color: red; }</style>
</head>
<body>
  <noscript>Enable JavaScript</noscript>
  <h1>Kettle</h1>
  <span class="price">$29.99</span>
</body>
</html>
"""


class FakeLLM:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.prompts = []

    async def call_llm_structured(self, prompt, response_schema, schema_name, system_prompt=""):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.data


def test_prepare_html_keeps_json_ld_and_drops_noise():
    prepared = prepare_html_for_ai(PAGE)

    assert '"@type": "Product"' in prepared
    assert "window.tracking" not in prepared
    assert "color: red" not in prepared
    assert "Enable JavaScript" not in prepared
    assert "$29.99" in prepared


def test_prepare_html_truncates():
    html = "<html><body><p>" + "price " * 1000 + "</p></body></html>"

    prepared = prepare_html_for_ai(html, max_chars=100)

    assert prepared.endswith(TRUNCATION_MARKER)
    assert len(prepared) == 100 + len(TRUNCATION_MARKER)


@pytest.mark.asyncio
async def test_extract_converts_price_and_resolves_image():
    llm = FakeLLM({"title": " Kettle ", "price": 29.99, "currency": "eur", "image_url": "/img/kettle.jpg"})
    extractor = HtmlStructuredExtractor(service=llm)

    result = await extractor.extract(URL, PAGE, Tier.RENDERED)

    assert result.title == "Kettle"
    assert result.price == 2999
    assert result.currency == "EUR"
    assert result.image_url == "https://shop.example.com/img/kettle.jpg"
    assert result.tier == Tier.RENDERED
    assert result.method == "ai"
    assert "$29.99" in llm.prompts[0]


@pytest.mark.asyncio
async def test_extract_defaults_unknown_currency():
    llm = FakeLLM({"title": "Kettle", "price": 10, "currency": "dollars", "image_url": None})

    result = await HtmlStructuredExtractor(service=llm).extract(URL, PAGE, Tier.CLOUD)

    assert result.currency == "USD"
    assert result.price == 1000
    assert result.image_url is None


@pytest.mark.asyncio
async def test_service_failure_is_provider_error():
    llm = FakeLLM(error=RuntimeError("rate limited"))

    with pytest.raises(ProviderError) as exc_info:
        await HtmlStructuredExtractor(service=llm).extract(URL, PAGE, Tier.CLOUD)

    assert exc_info.value.tier == "cloud"
    assert "rate limited" in str(exc_info.value)


@pytest.mark.asyncio
async def test_empty_answer_is_no_data():
    llm = FakeLLM({"title": None, "price": None, "currency": None, "image_url": None})

    with pytest.raises(NoDataFound):
        await HtmlStructuredExtractor(service=llm).extract(URL, PAGE, Tier.RENDERED)
