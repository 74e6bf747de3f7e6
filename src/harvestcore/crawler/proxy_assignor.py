"""
Static proxy assignment.

Maps target hostnames onto a fixed pool of proxy URLs, either sticky per
host (a host keeps its proxy until the proxy is evicted) or cycling through
the pool on every request.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import structlog

from harvestcore.config.config import ProxyConfig
from harvestcore.observability import metrics
from harvestcore.state import ProxyAssignorState

logger = structlog.get_logger(__name__)

STICKY_BY_HOST = "sticky_by_host"
SEQUENTIAL_CYCLE = "sequential_cycle"


def proxy_host(proxy_url: Optional[str]) -> Optional[str]:
    """
    Return the proxy's host, used as the rate limiter's IP key.

    Credentials and port are dropped so the key never leaks into logs or
    checkpoints with a password attached.
    """
    if not proxy_url:
        return None
    try:
        host = urlsplit(proxy_url).hostname
    except ValueError:
        return None
    return host or None


def redact_proxy(proxy_url: Optional[str]) -> Optional[str]:
    """Proxy URL with any password replaced, for log output."""
    if not proxy_url:
        return proxy_url
    parts = urlsplit(proxy_url)
    if parts.password is None:
        return proxy_url
    netloc = f"{parts.username}:***@{parts.hostname}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return parts._replace(netloc=netloc).geturl()


class ProxyAssignor:
    """
    Assigns proxies from a static pool to target hostnames.

    With no proxies configured every lookup returns None and requests go
    out directly. Evicting a proxy only removes host assignments pointing at
    it; the pool itself never shrinks.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.proxies: List[str] = list(config.static_proxies)
        self.strategy = config.assignment_strategy
        self._host_to_proxy: Dict[str, str] = {}
        self._proxy_index = 0
        # hostname -> proxy it was just evicted from
        self._recently_failed: Dict[str, str] = {}
        self._evictions = 0

        if self.proxies:
            logger.info("Proxy assignor initialized", proxies=len(self.proxies), strategy=self.strategy)
        else:
            logger.warning("Proxy assignor initialized with no static proxies, using direct connections")

    def has_proxies(self) -> bool:
        return bool(self.proxies)

    def _get_next_proxy(self) -> str:
        proxy = self.proxies[self._proxy_index % len(self.proxies)]
        self._proxy_index = (self._proxy_index + 1) % len(self.proxies)
        return proxy

    def get_proxy_for_host(self, hostname: str) -> Optional[str]:
        """Return the proxy to use for ``hostname``, or None for a direct connection."""
        if not self.proxies:
            return None

        if self.strategy == SEQUENTIAL_CYCLE:
            proxy = self._get_next_proxy()
            logger.debug("Using sequential proxy", hostname=hostname, proxy=redact_proxy(proxy))
            return proxy

        assigned = self._host_to_proxy.get(hostname)
        if assigned is not None:
            return assigned

        proxy = self._get_next_proxy()
        failed = self._recently_failed.pop(hostname, None)
        if failed is not None and proxy == failed and len(self.proxies) > 1:
            proxy = self._get_next_proxy()

        self._host_to_proxy[hostname] = proxy
        logger.info("Assigned sticky proxy", hostname=hostname, proxy=redact_proxy(proxy))
        return proxy

    def report_permanent_failure(self, proxy_url: str) -> None:
        """Drop every host assignment that points at ``proxy_url``."""
        logger.error("Proxy reported as permanently failing", proxy=redact_proxy(proxy_url))
        self._evictions += 1
        metrics.increment("proxy_evictions")

        for host in [h for h, p in self._host_to_proxy.items() if p == proxy_url]:
            del self._host_to_proxy[host]
            self._recently_failed[host] = proxy_url
            logger.info("Removed proxy assignment from host", hostname=host, proxy=redact_proxy(proxy_url))

    def snapshot(self) -> ProxyAssignorState:
        return ProxyAssignorState(
            host_to_ip_map=list(self._host_to_proxy.items()),
            current_ip_index=self._proxy_index,
        )

    def restore(self, state: Optional[ProxyAssignorState]) -> None:
        """
        Load assignments from a snapshot.

        Mappings to proxies that are no longer configured are dropped, and the
        cursor is wrapped into the current pool size.
        """
        if state is None:
            return

        pool = set(self.proxies)
        self._host_to_proxy = {host: proxy for host, proxy in state.host_to_ip_map if proxy in pool}
        dropped = len(state.host_to_ip_map) - len(self._host_to_proxy)
        self._proxy_index = state.current_ip_index % len(self.proxies) if self.proxies else 0
        self._recently_failed.clear()

        logger.info(
            "Proxy assignor state restored",
            host_mappings=len(self._host_to_proxy),
            dropped_mappings=dropped,
            current_index=self._proxy_index,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "proxies": len(self.proxies),
            "strategy": self.strategy,
            "host_assignments": len(self._host_to_proxy),
            "current_index": self._proxy_index,
            "evictions": self._evictions,
        }
