"""
The per-URL unit of work shared by discovery and batch jobs.

proxy lookup -> rate limiter slot -> browser session fetch -> failure
classification with backoff / proxy eviction side effects.
"""

from __future__ import annotations

import time
from typing import List, Optional

import structlog

from harvestcore.crawler.proxy_assignor import ProxyAssignor, proxy_host, redact_proxy
from harvestcore.crawler.rate_limiter import SlidingWindowRateLimiter
from harvestcore.crawler.url_utils import clean_url, extract_hostname, normalize_url, resolve_absolute_url
from harvestcore.errors import ConnectivitySignal, PerItemError, RateLimitSignal, classify_failure
from harvestcore.observability import metrics
from harvestcore.protocols import BrowserSession, PageContent

logger = structlog.get_logger(__name__)


def extract_child_links(page: PageContent) -> List[str]:
    """Resolve raw hrefs against the final URL, strip tracking parameters and canonicalize in first-seen order."""
    base = page.final_url or page.url
    seen = set()
    children: List[str] = []
    for href in page.links:
        absolute = resolve_absolute_url(href, base)
        if absolute is None:
            continue
        normalized = normalize_url(clean_url(absolute))
        if normalized is None or normalized in seen:
            continue
        seen.add(normalized)
        children.append(normalized)
    return children


class UrlPipeline:
    """
    Processes one URL under the shared rate limiter and proxy assignor.

    Failures come back as ``PerItemError`` (or one of its signal subclasses)
    after their side effects on the limiter and assignor have been applied.
    """

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        proxy_assignor: ProxyAssignor,
        session: BrowserSession,
        mode: str,
    ):
        self.rate_limiter = rate_limiter
        self.proxy_assignor = proxy_assignor
        self.session = session
        self.mode = mode

    async def fetch(self, url: str) -> PageContent:
        hostname = extract_hostname(url)
        if hostname is None:
            raise PerItemError(url, "URL has no hostname")

        proxy = self.proxy_assignor.get_proxy_for_host(hostname)
        ip = proxy_host(proxy)

        await self.rate_limiter.acquire(hostname, ip)
        metrics.increment("requests_issued", labels={"mode": self.mode})

        start = time.monotonic()
        try:
            page = await self.session.fetch_and_extract(url, proxy)
        except Exception as exc:
            error = classify_failure(exc, url, proxy)
            self._apply_side_effects(error, hostname, proxy, ip)
            logger.warning(
                "URL processing failed",
                url=url,
                kind=error.kind,
                proxy=redact_proxy(proxy),
                error=str(error),
            )
            raise error from exc

        logger.debug(
            "URL fetched",
            url=url,
            status=page.status,
            links=len(page.links),
            duration=round(time.monotonic() - start, 3),
        )
        return page

    def _apply_side_effects(self, error: PerItemError, hostname: str, proxy: Optional[str], ip: Optional[str]) -> None:
        if isinstance(error, RateLimitSignal):
            self.rate_limiter.initiate_host_backoff(hostname)
            if ip is not None:
                self.rate_limiter.initiate_ip_backoff(ip)
        elif isinstance(error, ConnectivitySignal):
            if proxy is not None:
                self.proxy_assignor.report_permanent_failure(proxy)
            if ip is not None:
                self.rate_limiter.initiate_ip_backoff(ip)
