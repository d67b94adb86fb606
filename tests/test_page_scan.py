"""Tests for HTML scanning and bot-wall detection."""

from pricewatch.ingest.content_analyzer import ContentAnalyzer
from pricewatch.ingest.page_scan import scan_html

PAGE_URL = "https://shop.example.com/products/widget"


def test_scan_visible_selectors():
    html = """
    <html><body>
      <h1 id="productTitle"> Widget Pro </h1>
      <div class="price">$1,299.99</div>
      <img id="landingImage" src="/images/widget.jpg">
    </body></html>
    """
    result = scan_html(html, PAGE_URL)

    assert result.title == "Widget Pro"
    assert result.price == 129999
    assert result.currency == "USD"
    assert result.image_url == "https://shop.example.com/images/widget.jpg"
    assert result.is_complete


def test_scan_falls_back_to_meta_tags():
    html = """
    <html><head>
      <meta property="og:title" content="Gadget">
      <meta property="product:price:amount" content="24.50">
      <meta property="product:price:currency" content="eur">
      <meta property="og:image" content="https://cdn.example.com/gadget.png">
    </head><body><p>Details</p></body></html>
    """
    result = scan_html(html, PAGE_URL)

    assert result.title == "Gadget"
    assert result.price == 2450
    assert result.currency == "EUR"
    assert result.image_url == "https://cdn.example.com/gadget.png"


def test_scan_reads_json_ld_graph():
    html = """
    <html><head>
      <script type="application/ld+json">
        {"@context": "https://schema.org", "@graph": [
          {"@type": "WebPage", "name": "Lamp page"},
          {"@type": "Product", "name": "Desk Lamp",
           "image": ["https://cdn.example.com/lamp.jpg"],
           "offers": {"@type": "Offer", "price": "39.90", "priceCurrency": "GBP"}}
        ]}
      </script>
    </head><body><p>Loading...</p></body></html>
    """
    result = scan_html(html, PAGE_URL)

    assert result.title == "Desk Lamp"
    assert result.price == 3990
    assert result.currency == "GBP"
    assert result.image_url == "https://cdn.example.com/lamp.jpg"


def test_scan_incomplete_page_does_not_raise():
    result = scan_html("<html><body><p>Nothing to see</p></body></html>", PAGE_URL)

    assert result.title is None
    assert result.price is None
    assert not result.is_complete


def test_scan_ignores_broken_json_ld():
    html = """
    <html><head><script type="application/ld+json">{not json</script></head>
    <body><h1>Only a title</h1></body></html>
    """
    result = scan_html(html, PAGE_URL)

    assert result.title == "Only a title"
    assert result.price is None


def test_error_status_with_block_text_is_blocked():
    analysis = ContentAnalyzer().analyze(
        "<html><head><title>Access Denied</title></head><body>Access Denied</body></html>",
        status_code=403,
    )
    assert analysis.is_blocked
    assert analysis.block_type == "access_denied"


def test_short_challenge_page_is_blocked():
    analysis = ContentAnalyzer().analyze(
        "<html><head><title>Just a moment...</title></head><body>Checking your browser</body></html>",
        status_code=200,
    )
    assert analysis.is_blocked
    assert analysis.block_type == "cloudflare"


def test_full_product_page_mentioning_captcha_is_not_blocked():
    body = "<p>" + "Solid oak desk with drawers. " * 100 + "</p><footer>Protected by reCAPTCHA</footer>"
    analysis = ContentAnalyzer().analyze(f"<html><body>{body}</body></html>", status_code=200)

    assert not analysis.is_blocked
    assert analysis.block_type is None


def test_empty_error_response_is_blocked():
    analysis = ContentAnalyzer().analyze("", status_code=503)

    assert analysis.is_blocked
    assert analysis.block_type == "http_503"
