"""
Collaborator interfaces used by the crawl engines.

The engines decide what to fetch, when, and through which proxy. Fetching,
rendering and content extraction happen behind ``BrowserSession``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable


@dataclass
class PageContent:
    """What a browser session hands back for one URL."""

    url: str
    final_url: str
    status: int = 200
    title: str = ""
    text: str = ""
    links: List[str] = field(default_factory=list)
    content_type: str = "text/html"
    output_path: Optional[str] = None

    @property
    def content_length(self) -> int:
        return len(self.text)


@runtime_checkable
class BrowserSession(Protocol):
    """
    Fetches a page and extracts its content and outgoing links.

    Implementations raise on failure. The engines classify the raised
    exception (see ``harvestcore.errors.classify_failure``) to decide on
    backoff and proxy eviction, so implementations should let HTTP status
    and connection errors surface rather than wrapping them in generic
    exceptions.
    """

    async def fetch_and_extract(self, url: str, proxy: Optional[str] = None) -> PageContent:
        ...

    async def close(self) -> None:
        ...
