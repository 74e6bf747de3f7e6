"""
Plain-HTTP browser session built on aiohttp and selectolax.

Satisfies the ``BrowserSession`` protocol without driving a real browser:
pages are fetched with a single GET, text and links are pulled from the
static HTML. Sites that need JavaScript rendering need a different session.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlsplit

import aiohttp
import structlog
from selectolax.lexbor import LexborHTMLParser

from harvestcore.config.config import CrawlerConfig
from harvestcore.crawler.proxy_assignor import redact_proxy
from harvestcore.crawler.user_agents import UserAgentRotator
from harvestcore.protocols import PageContent
from harvestcore.utils import atomic_write_text, slugify

logger = structlog.get_logger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
NOISE_TAGS = ["script", "style", "noscript", "template", "svg", "iframe"]


def extract_page(html: str, url: str, final_url: str, status: int, selectors: Sequence[str] = ()) -> PageContent:
    """Parse HTML into title, visible text and raw hrefs."""
    tree = LexborHTMLParser(html)

    title_node = tree.css_first("title")
    title = title_node.text(strip=True) if title_node is not None else ""

    links: List[str] = []
    for node in tree.css("a[href]"):
        href = node.attributes.get("href")
        if href:
            links.append(href.strip())

    tree.strip_tags(NOISE_TAGS)

    text = ""
    for selector in selectors:
        node = tree.css_first(selector)
        if node is not None:
            text = node.text(separator="\n", strip=True)
            if text:
                break
    if not text:
        root = tree.body or tree.root
        text = root.text(separator="\n", strip=True) if root is not None else ""

    return PageContent(url=url, final_url=final_url, status=status, title=title, text=text, links=links)


class HttpFetchSession:
    """
    aiohttp-backed ``BrowserSession``.

    Non-2xx responses raise ``aiohttp.ClientResponseError`` so the crawl
    pipeline can see 429s. Proxy connection failures surface as aiohttp's
    proxy errors.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        content_selectors: Sequence[str] = (),
        output_dir: Optional[Path] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.content_selectors = list(content_selectors)
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.session = session
        self._owns_session = session is None
        self.user_agents = UserAgentRotator(config.user_agent) if config.user_agent_rotation else None
        self._stats: Dict[str, int] = {"fetched": 0, "non_html": 0, "errors": 0}

    async def initialize(self) -> None:
        if self.session is None:
            connector = aiohttp.TCPConnector(limit=0, ttl_dns_cache=30, enable_cleanup_closed=True)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.config.navigation_timeout),
                headers={"User-Agent": self.config.default_user_agent},
            )
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "HttpFetchSession":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5"}
        if self.user_agents is not None:
            headers["User-Agent"] = self.user_agents.get_random_user_agent()
        return headers

    async def fetch_and_extract(self, url: str, proxy: Optional[str] = None) -> PageContent:
        await self.initialize()
        assert self.session is not None

        kwargs: Dict[str, Any] = {"headers": self._headers()}
        if proxy:
            kwargs["proxy"] = proxy

        try:
            async with asyncio.timeout(self.config.navigation_timeout):
                async with self.session.get(url, **kwargs) as response:
                    response.raise_for_status()
                    final_url = str(response.url)
                    content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()

                    if content_type and not content_type.startswith(HTML_CONTENT_TYPES):
                        self._stats["non_html"] += 1
                        return PageContent(url=url, final_url=final_url, status=response.status, content_type=content_type)

                    html = await response.text(errors="replace")
                    status = response.status
        except Exception as e:
            self._stats["errors"] += 1
            logger.debug("Fetch failed", url=url, proxy=redact_proxy(proxy), error=str(e) or type(e).__name__)
            raise

        page = extract_page(html, url, final_url, status, self.content_selectors)
        page.content_type = content_type or "text/html"
        if self.output_dir is not None and page.text:
            page.output_path = await asyncio.to_thread(self._save_text, page)

        self._stats["fetched"] += 1
        return page

    def _save_text(self, page: PageContent) -> str:
        assert self.output_dir is not None
        parts = urlsplit(page.url)
        name = slugify(f"{parts.hostname}{parts.path}", max_length=150) or "index"
        target = self.output_dir / f"{name}.txt"
        body = f"URL: {page.url}\nTitle: {page.title}\n\n{page.text}\n"
        atomic_write_text(target, body)
        return str(target)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
