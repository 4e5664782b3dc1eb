import asyncio

import httpx
import pytest

from reqflow.acquisition import FetchError, extract_urls, fetch_source, parse_html

PAGE = """
<html>
  <head><title>  Acme   Checkout </title><script>var tracking = 1;</script></head>
  <body>
    <nav><a href="https://acme.test/home">Home</a></nav>
    <header><h1>Site header</h1></header>
    <div class="ad-banner">Buy now!</div>
    <main>
      <h1>Checkout flow</h1>
      <p>Customers   pay with
         cards.</p>
      <h2>Payments</h2>
      <p>Refunds within 30 days. <a href="https://acme.test/refunds">Refund policy</a>
         <a href="/relative">Relative</a></p>
      <div id="sponsored-box">Sponsored content</div>
    </main>
    <footer>Copyright</footer>
  </body>
</html>
"""


def test_extract_urls_trims_punctuation_and_dedupes() -> None:
    text = "See https://a.test/brief. Also (https://b.test/x) and https://a.test/brief!"

    assert extract_urls(text) == ["https://a.test/brief", "https://b.test/x"]
    assert extract_urls("no links here") == []


def test_parse_html_keeps_main_content_only() -> None:
    source = parse_html("https://acme.test/checkout", PAGE)

    assert source.title == "Acme Checkout"
    assert source.headings == ["Checkout flow", "Payments"]
    assert "Customers pay with cards." in source.body
    assert "tracking" not in source.body
    assert "Buy now" not in source.body
    assert "Sponsored" not in source.body
    assert "Copyright" not in source.body
    assert source.links == [{"text": "Refund policy", "href": "https://acme.test/refunds"}]


def test_parse_html_falls_back_to_first_heading_and_body() -> None:
    html = "<html><body><h1>Only heading</h1><p>" + "x" * 9000 + "</p></body></html>"

    source = parse_html("https://acme.test", html, body_limit=8000)

    assert source.title == "Only heading"
    assert len(source.body) == 8000


def test_parse_html_limits_headings_and_links() -> None:
    headings = "".join(f"<h2>Section {index}</h2>" for index in range(15))
    links = "".join(f'<a href="https://x.test/{index}">link {index}</a>' for index in range(9))
    source = parse_html("https://x.test", f"<body><article>{headings}{links}</article></body>")

    assert len(source.headings) == 10
    assert len(source.links) == 5


def test_fetch_source_sends_user_agent_and_parses() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["user_agent"] = request.headers["User-Agent"]
        return httpx.Response(200, html=PAGE)

    source = asyncio.run(
        fetch_source(
            "https://acme.test/checkout",
            user_agent="reqflow-test/1.0",
            transport=httpx.MockTransport(handler),
        )
    )

    assert seen["user_agent"] == "reqflow-test/1.0"
    assert source.url == "https://acme.test/checkout"
    assert source.title == "Acme Checkout"


def test_fetch_source_plain_text_uses_markdown_headings() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        return httpx.Response(
            200,
            text="# Brief\n\n## Login\nUsers sign in.",
            headers={"Content-Type": "text/markdown"},
        )

    source = asyncio.run(
        fetch_source("https://acme.test/brief.md", transport=httpx.MockTransport(handler))
    )

    assert source.title == "Brief"
    assert source.headings == ["Brief", "Login"]
    assert "Users sign in." in source.body


def test_fetch_source_maps_http_errors() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    with pytest.raises(FetchError, match="HTTP 503") as excinfo:
        asyncio.run(fetch_source("https://down.test", transport=transport))

    assert excinfo.value.url == "https://down.test"


def test_fetch_source_maps_timeouts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(FetchError, match="timed out"):
        asyncio.run(fetch_source("https://slow.test", transport=httpx.MockTransport(handler)))
