"""
Error taxonomy for crawl jobs and classification of collaborator failures.

Only two failure families carry side effects on shared crawl state:

* rate limiting (HTTP 429 / "too many requests") backs off the host, and the
  proxy IP when one was used;
* connectivity failures (refused / aborted / reset connections, proxy
  connection errors) evict the proxy from host assignments and back off its IP.

Everything else is an ordinary per-item failure.
"""

from __future__ import annotations

import re
from typing import Optional

import aiohttp


class HarvestError(Exception):
    """Base class for harvestcore errors."""


class JobValidationError(HarvestError, ValueError):
    """Invalid job input (seed URL, URL list, options). Raised before any work starts."""


class StateCorruptionError(HarvestError):
    """A checkpoint file could not be parsed or is incompatible. Handled inside the store."""


class PerItemError(HarvestError):
    """A single URL failed. Recorded in the job's failure list; the job continues."""

    def __init__(self, url: str, message: str, proxy: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.url = url
        self.proxy = proxy
        self.cause = cause

    @property
    def kind(self) -> str:
        return "error"


class RateLimitSignal(PerItemError):
    """The target (or the proxy's egress IP) is throttling us."""

    @property
    def kind(self) -> str:
        return "rate_limited"


class ConnectivitySignal(PerItemError):
    """The proxy (or the direct route) refused or dropped the connection."""

    @property
    def kind(self) -> str:
        return "connectivity"


_RATE_LIMIT_PATTERN = re.compile(r"\b429\b|too many requests", re.IGNORECASE)
_CONNECTIVITY_MARKERS = (
    "econnrefused",
    "connection refused",
    "econnaborted",
    "connection aborted",
    "econnreset",
    "connection reset",
    "err_proxy_connection_failed",
    "err_tunnel_connection_failed",
)


def _is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, aiohttp.ClientResponseError) and exc.status == 429:
        return True
    status = getattr(exc, "status", None)
    if status == 429:
        return True
    return bool(_RATE_LIMIT_PATTERN.search(str(exc)))


def _is_connectivity_failure(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionRefusedError, ConnectionAbortedError, ConnectionResetError)):
        return True
    if isinstance(exc, (aiohttp.ClientProxyConnectionError, aiohttp.ClientHttpProxyError)):
        return True
    if isinstance(exc, aiohttp.ClientConnectorError) and isinstance(
        exc.os_error, (ConnectionRefusedError, ConnectionAbortedError, ConnectionResetError)
    ):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTIVITY_MARKERS)


def classify_failure(exc: BaseException, url: str, proxy: Optional[str] = None) -> PerItemError:
    """
    Map a raw collaborator failure onto the error taxonomy.

    Classification looks at the exception type, an HTTP status where one is
    attached, and the message text, so that failures surfaced by browser
    automation layers (which only expose strings) classify the same way as
    aiohttp exceptions.
    """
    if isinstance(exc, PerItemError):
        return exc

    message = str(exc) or exc.__class__.__name__
    if _is_rate_limited(exc):
        return RateLimitSignal(url, message, proxy=proxy, cause=exc)
    if _is_connectivity_failure(exc):
        return ConnectivitySignal(url, message, proxy=proxy, cause=exc)
    return PerItemError(url, message, proxy=proxy, cause=exc)
