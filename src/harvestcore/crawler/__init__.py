"""URL handling, rate limiting, proxy assignment and the default HTTP session."""

from .http_session import HttpFetchSession
from .proxy_assignor import ProxyAssignor, proxy_host
from .rate_limiter import RequestWindow, SlidingWindowRateLimiter
from .url_utils import UrlFilter, is_included, normalize_url

__all__ = [
    "HttpFetchSession",
    "ProxyAssignor",
    "RequestWindow",
    "SlidingWindowRateLimiter",
    "UrlFilter",
    "is_included",
    "normalize_url",
    "proxy_host",
]
