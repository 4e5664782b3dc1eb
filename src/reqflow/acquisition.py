from __future__ import annotations

import logging
import re

import httpx
from bs4 import BeautifulSoup, Tag

from reqflow.domain import Source

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s<>\"')\]]+", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")
AD_LIKE_PATTERN = re.compile(
    r"(^|[\s_-])(ads?|advert\w*|banner|sponsor\w*|promo\w*|cookie\w*)($|[\s_-])",
    re.IGNORECASE,
)

STRIPPED_TAGS = [
    "script",
    "style",
    "nav",
    "footer",
    "header",
    "aside",
    "noscript",
    "iframe",
    "form",
]
MAIN_CONTENT_SELECTORS = [
    "main",
    "[role=main]",
    "article",
    ".content",
    "#content",
    ".main-content",
    ".post",
    ".entry-content",
]
DEFAULT_USER_AGENT = "reqflow-requirements-analyzer/0.3"


class FetchError(RuntimeError):
    """Raised when a source URL cannot be fetched."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


def extract_urls(text: str) -> list[str]:
    urls: list[str] = []
    for match in URL_PATTERN.findall(text or ""):
        url = match.rstrip(".,;:!?")
        if url not in urls:
            urls.append(url)
    return urls


def _collapse(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _is_ad_like(node: Tag) -> bool:
    if node.attrs is None:
        return False
    classes = node.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    markers = " ".join([*classes, str(node.get("id") or "")])
    return bool(markers.strip()) and bool(AD_LIKE_PATTERN.search(markers))


def _main_container(soup: BeautifulSoup) -> Tag | BeautifulSoup:
    for selector in MAIN_CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None and node.get_text(strip=True):
            return node
    return soup.body or soup


def parse_html(
    url: str,
    html: str,
    *,
    body_limit: int = 8000,
    max_headings: int = 10,
    max_links: int = 5,
) -> Source:
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    if soup.title and soup.title.get_text(strip=True):
        title = _collapse(soup.title.get_text())

    for node in soup(STRIPPED_TAGS):
        node.decompose()
    for node in soup.find_all(True):
        if not node.decomposed and _is_ad_like(node):
            node.decompose()

    headings = [
        _collapse(node.get_text(" "))
        for node in soup.find_all(["h1", "h2", "h3"])
        if node.get_text(strip=True)
    ][:max_headings]
    if not title and headings:
        title = headings[0]

    container = _main_container(soup)
    body = _collapse(container.get_text(" "))[:body_limit]

    links: list[dict[str, str]] = []
    for anchor in container.find_all("a", href=True):
        href = str(anchor["href"])
        text = _collapse(anchor.get_text(" "))
        if not href.startswith(("http://", "https://")) or not text:
            continue
        links.append({"text": text[:120], "href": href})
        if len(links) >= max_links:
            break

    return Source(url=url, title=title, headings=headings, body=body, links=links)


def parse_text(url: str, text: str, *, body_limit: int = 8000, max_headings: int = 10) -> Source:
    headings = [
        line.lstrip("#").strip()
        for line in text.splitlines()
        if line.startswith("#") and line.lstrip("#").strip()
    ][:max_headings]
    title = headings[0] if headings else ""
    return Source(url=url, title=title, headings=headings, body=_collapse(text)[:body_limit])


async def fetch_source(
    url: str,
    *,
    timeout_seconds: float = 10.0,
    user_agent: str = DEFAULT_USER_AGENT,
    body_limit: int = 8000,
    max_headings: int = 10,
    max_links: int = 5,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Source:
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5",
    }
    try:
        async with httpx.AsyncClient(
            timeout=timeout_seconds,
            headers=headers,
            follow_redirects=True,
            transport=transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.TimeoutException as exc:
        raise FetchError(url, f"timed out after {timeout_seconds:.0f}s") from exc
    except httpx.HTTPStatusError as exc:
        raise FetchError(url, f"HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise FetchError(url, str(exc) or type(exc).__name__) from exc

    content_type = response.headers.get("Content-Type", "")
    logger.info("fetched %s (%s, %d bytes)", url, content_type or "unknown", len(response.content))
    if "html" in content_type or not content_type:
        return parse_html(
            url,
            response.text,
            body_limit=body_limit,
            max_headings=max_headings,
            max_links=max_links,
        )
    return parse_text(url, response.text, body_limit=body_limit, max_headings=max_headings)
