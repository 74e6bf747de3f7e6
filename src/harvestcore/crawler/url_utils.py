"""
URL normalization and the crawl filter predicate.

Every URL that enters a frontier, a dedup set, or a checkpoint goes through
``normalize_url`` first, so two spellings of the same page always collapse
to one canonical string.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern, Sequence
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import structlog

logger = structlog.get_logger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})
DEFAULT_PORTS = {"http": 80, "https": 443}

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "ref",
        "fbclid",
        "gclid",
        "pk_campaign",
        "pk_kwd",
        "zanpid",
        "origin",
    }
)

# "mailto:x", "javascript:void(0)", "ftp://..." but not "example.com:8080/path"
_EXPLICIT_SCHEME = re.compile(r"^[a-z][a-z0-9+.\-]*:(?!\d)", re.IGNORECASE)


def normalize_url(raw: str) -> Optional[str]:
    """
    Canonicalize a URL or return None when it cannot be crawled.

    Scheme-less input such as ``example.com/docs`` is treated as https.
    Scheme and host are lower-cased, default ports and trailing path slashes
    are dropped, the query string is kept, and the fragment and any userinfo
    are removed.

    >>> normalize_url("HTTPS://Example.COM:443/a/#top")
    'https://example.com/a'
    >>> normalize_url("example.com/docs/?q=1")
    'https://example.com/docs?q=1'
    >>> normalize_url("mailto:someone@example.com") is None
    True
    """
    if not raw:
        return None

    candidate = raw.strip()
    if not candidate:
        return None

    if "://" not in candidate:
        if _EXPLICIT_SCHEME.match(candidate):
            return None
        candidate = f"https://{candidate.lstrip('/')}"

    try:
        parts = urlsplit(candidate)
        scheme = parts.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            return None

        host = (parts.hostname or "").lower()
        if not host:
            return None
        port = parts.port
    except ValueError:
        return None

    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None or port == DEFAULT_PORTS[scheme] else f"{host}:{port}"
    path = parts.path.rstrip("/")

    normalized = urlunsplit((scheme, netloc, path, parts.query, ""))
    return normalized if is_valid_url(normalized) else None


def is_valid_url(url: str) -> bool:
    """True when ``url`` parses as an absolute http(s) URL with a host."""
    try:
        parts = urlsplit(url)
    except (TypeError, ValueError):
        return False
    return parts.scheme.lower() in ALLOWED_SCHEMES and bool(parts.hostname)


def extract_hostname(url: str) -> Optional[str]:
    try:
        hostname = urlsplit(url).hostname
    except (TypeError, ValueError):
        return None
    return hostname.lower() if hostname else None


def resolve_absolute_url(href: str, base_url: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url``; None when the result is unusable."""
    if not href:
        return None
    try:
        resolved = urljoin(base_url, href.strip())
    except ValueError:
        return None
    return resolved or None


def clean_url(url: str) -> str:
    """Strip well-known tracking parameters. Unparseable input is returned unchanged."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url

    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k.lower() not in TRACKING_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), urlencode(kept), ""))


def compile_patterns(patterns: Iterable[str | Pattern[str]]) -> List[Pattern[str]]:
    """Compile regex strings case-insensitively, skipping invalid ones."""
    compiled: List[Pattern[str]] = []
    for pattern in patterns:
        if isinstance(pattern, re.Pattern):
            compiled.append(pattern)
            continue
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.debug("Invalid exclude pattern", pattern=pattern, error=str(e))
    return compiled


def is_included(
    url: str,
    exclude_patterns: Sequence[str | Pattern[str]],
    invalid_prefixes: Sequence[str],
    blocked_extensions: Sequence[str],
    keywords: Optional[Sequence[str]] = None,
) -> bool:
    """
    Decide whether a URL may enter a frontier.

    A URL is excluded when any exclude pattern matches, when it starts with an
    invalid prefix, or when the lower-cased URL contains a blocked extension.
    With keywords given, at least one must also appear in the URL. Any error
    while evaluating excludes the URL.
    """
    try:
        for pattern in compile_patterns(exclude_patterns):
            if pattern.search(url):
                return False

        url_lower = url.lower()
        for prefix in invalid_prefixes:
            if url_lower.startswith(prefix.lower()):
                return False

        for ext in blocked_extensions:
            if ext.lower() in url_lower:
                return False

        if keywords:
            wanted = [k.lower() for k in keywords if k and k.strip()]
            if wanted and not any(k in url_lower for k in wanted):
                return False

        return True
    except Exception as e:
        logger.debug("URL filtering error, excluding URL", url=url, error=str(e))
        return False


class UrlFilter:
    """
    Filter predicate bound to configured lists plus per-job additions.

    Patterns are compiled once at construction rather than per URL.
    """

    def __init__(
        self,
        exclude_patterns: Sequence[str] = (),
        invalid_prefixes: Sequence[str] = (),
        blocked_extensions: Sequence[str] = (),
        extra_exclude_patterns: Sequence[str] = (),
        keywords: Optional[Sequence[str]] = None,
    ):
        self.exclude_patterns = compile_patterns(list(exclude_patterns) + list(extra_exclude_patterns))
        self.invalid_prefixes = list(invalid_prefixes)
        self.blocked_extensions = list(blocked_extensions)
        self.keywords = [k for k in (keywords or []) if k and k.strip()]

    @classmethod
    def from_config(
        cls,
        filtering,
        extra_exclude_patterns: Sequence[str] = (),
        keywords: Optional[Sequence[str]] = None,
    ) -> "UrlFilter":
        return cls(
            exclude_patterns=filtering.exclude_patterns,
            invalid_prefixes=filtering.invalid_url_prefixes,
            blocked_extensions=filtering.extensions_to_avoid,
            extra_exclude_patterns=extra_exclude_patterns,
            keywords=keywords,
        )

    def __call__(self, url: str) -> bool:
        return is_included(url, self.exclude_patterns, self.invalid_prefixes, self.blocked_extensions, self.keywords)
