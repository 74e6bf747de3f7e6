"""
Sliding-Window Rate Limiter with Host and IP Backoff

Enforces, per target hostname and optionally per proxy IP:

- a minimum spacing between consecutive requests plus random jitter,
- a requests-per-minute budget over a rolling 60 second window,
- explicit backoff windows opened by callers after classified failures.

Backoff is never automatic. The crawl pipeline classifies collaborator
failures and calls ``initiate_host_backoff`` / ``initiate_ip_backoff``.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from harvestcore.config.config import RateLimitConfig
from harvestcore.observability import metrics
from harvestcore.state import RateLimiterState, WindowState

logger = structlog.get_logger(__name__)

WINDOW_MS = 60_000

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass
class RequestWindow:
    """Request history for one hostname or one proxy IP. Times are epoch ms."""

    timestamps: List[float] = field(default_factory=list)
    last_request_time: float = 0.0
    backoff_until: float = 0.0

    def prune(self, now: float) -> None:
        self.timestamps = [ts for ts in self.timestamps if now - ts < WINDOW_MS]

    def to_state(self) -> WindowState:
        return WindowState(
            timestamps=list(self.timestamps),
            last_request_time=self.last_request_time,
            backoff_until=self.backoff_until,
        )

    @classmethod
    def from_state(cls, state: WindowState) -> "RequestWindow":
        return cls(
            timestamps=sorted(state.timestamps),
            last_request_time=state.last_request_time,
            backoff_until=state.backoff_until,
        )


class SlidingWindowRateLimiter:
    """
    Per-host and per-IP request budgets for polite crawling.

    ``wait_for_slot`` followed by ``record_request`` must not be interleaved
    with another coroutine's wait for the same key, otherwise two waiters can
    both observe a free slot. Each host and each IP therefore has its own
    lock, held for the whole wait. ``acquire`` performs both steps under the
    locks and is what the crawl pipeline uses.

    Lock order is always host, then IP.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self._clock: Clock = clock or _wall_clock_ms
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._random = rng or random.Random()

        self._host_windows: Dict[str, RequestWindow] = {}
        self._ip_windows: Dict[str, RequestWindow] = {}
        self._host_locks: Dict[str, asyncio.Lock] = {}
        self._ip_locks: Dict[str, asyncio.Lock] = {}

        self._total_wait_ms = 0.0
        self._requests_recorded = 0

        if config.enabled:
            logger.info(
                "Rate limiter initialized",
                rpm_per_host=config.max_requests_per_minute_per_host,
                rpm_per_ip=config.max_requests_per_minute_per_ip,
                min_delay_ms=config.min_delay_ms_per_host,
            )
        else:
            logger.info("Rate limiter initialized but is disabled")

    @property
    def ip_limiting_enabled(self) -> bool:
        return self.config.enabled and bool(self.config.max_requests_per_minute_per_ip)

    def _get_host_lock(self, hostname: str) -> asyncio.Lock:
        if hostname not in self._host_locks:
            self._host_locks[hostname] = asyncio.Lock()
        return self._host_locks[hostname]

    def _get_ip_lock(self, proxy_ip: str) -> asyncio.Lock:
        if proxy_ip not in self._ip_locks:
            self._ip_locks[proxy_ip] = asyncio.Lock()
        return self._ip_locks[proxy_ip]

    def _host_window(self, hostname: str) -> RequestWindow:
        if hostname not in self._host_windows:
            self._host_windows[hostname] = RequestWindow()
        return self._host_windows[hostname]

    def _ip_window(self, proxy_ip: str) -> RequestWindow:
        if proxy_ip not in self._ip_windows:
            self._ip_windows[proxy_ip] = RequestWindow()
        return self._ip_windows[proxy_ip]

    async def _pause(self, delay_ms: float) -> None:
        if delay_ms <= 0:
            return
        self._total_wait_ms += delay_ms
        await self._sleep(delay_ms / 1000.0)

    async def _wait_for_window(self, window: RequestWindow, limit: int, key: str, kind: str) -> None:
        now = self._clock()
        window.prune(now)
        while len(window.timestamps) >= limit:
            wait_ms = WINDOW_MS - (now - window.timestamps[0])
            logger.debug("Waiting for RPM window", key=key, kind=kind, wait_ms=round(wait_ms))
            await self._pause(wait_ms)
            now = self._clock()
            window.prune(now)

    async def _wait_unlocked(self, hostname: str, proxy_ip: Optional[str]) -> None:
        use_ip = proxy_ip is not None and self.ip_limiting_enabled
        host = self._host_window(hostname)

        now = self._clock()
        if now < host.backoff_until:
            wait_ms = host.backoff_until - now
            logger.warning("Host is in backoff", hostname=hostname, wait_ms=round(wait_ms))
            await self._pause(wait_ms)

        if use_ip:
            ip = self._ip_window(proxy_ip)  # type: ignore[arg-type]
            now = self._clock()
            if now < ip.backoff_until:
                wait_ms = ip.backoff_until - now
                logger.warning("Proxy IP is in backoff", proxy_ip=proxy_ip, wait_ms=round(wait_ms))
                await self._pause(wait_ms)

        if host.last_request_time > 0:
            required_ms = self.config.min_delay_ms_per_host + self._random.random() * self.config.max_random_delay_ms_per_host
            elapsed_ms = self._clock() - host.last_request_time
            if elapsed_ms < required_ms:
                logger.debug("Spacing requests", hostname=hostname, wait_ms=round(required_ms - elapsed_ms))
                await self._pause(required_ms - elapsed_ms)

        await self._wait_for_window(host, self.config.max_requests_per_minute_per_host, hostname, "host")

        if use_ip:
            await self._wait_for_window(
                self._ip_window(proxy_ip),  # type: ignore[arg-type]
                self.config.max_requests_per_minute_per_ip,  # type: ignore[arg-type]
                proxy_ip,  # type: ignore[arg-type]
                "ip",
            )

    def _record_unlocked(self, hostname: str, proxy_ip: Optional[str]) -> None:
        now = self._clock()
        host = self._host_window(hostname)
        host.timestamps.append(now)
        host.last_request_time = now

        if proxy_ip is not None and self.ip_limiting_enabled:
            ip = self._ip_window(proxy_ip)
            ip.timestamps.append(now)
            ip.last_request_time = now

        self._requests_recorded += 1

    async def wait_for_slot(self, hostname: str, proxy_ip: Optional[str] = None) -> None:
        """
        Suspend until a request to ``hostname`` (through ``proxy_ip``) is allowed.

        Does not record the request. Callers that do not use ``acquire`` must
        call ``record_request`` immediately after this returns.
        """
        if not self.config.enabled:
            return
        async with self._get_host_lock(hostname):
            if proxy_ip is not None and self.ip_limiting_enabled:
                async with self._get_ip_lock(proxy_ip):
                    await self._wait_unlocked(hostname, proxy_ip)
            else:
                await self._wait_unlocked(hostname, proxy_ip)

    def record_request(self, hostname: str, proxy_ip: Optional[str] = None) -> None:
        """Append the current time to the host (and IP) windows."""
        if not self.config.enabled:
            return
        self._record_unlocked(hostname, proxy_ip)

    async def acquire(self, hostname: str, proxy_ip: Optional[str] = None) -> float:
        """
        Wait for a slot and record the request as one step.

        Returns:
            Time spent waiting, in seconds
        """
        if not self.config.enabled:
            return 0.0

        waited_before = self._total_wait_ms
        async with self._get_host_lock(hostname):
            if proxy_ip is not None and self.ip_limiting_enabled:
                async with self._get_ip_lock(proxy_ip):
                    await self._wait_unlocked(hostname, proxy_ip)
                    self._record_unlocked(hostname, proxy_ip)
            else:
                await self._wait_unlocked(hostname, proxy_ip)
                self._record_unlocked(hostname, proxy_ip)

        waited = (self._total_wait_ms - waited_before) / 1000.0
        metrics.observe("rate_limit_wait_seconds", waited)
        return waited

    def initiate_host_backoff(self, hostname: str) -> None:
        if not self.config.enabled:
            return
        window = self._host_window(hostname)
        window.backoff_until = self._clock() + self.config.host_backoff_ms_on_error
        metrics.increment("backoffs_initiated", labels={"kind": "host"})
        logger.warning(
            "Host put into backoff",
            hostname=hostname,
            backoff_ms=self.config.host_backoff_ms_on_error,
            backoff_until=window.backoff_until,
        )

    def initiate_ip_backoff(self, proxy_ip: str) -> None:
        """Open an IP backoff window. No-op unless per-IP limiting is configured."""
        if not self.ip_limiting_enabled:
            return
        window = self._ip_window(proxy_ip)
        window.backoff_until = self._clock() + self.config.ip_backoff_ms_on_error
        metrics.increment("backoffs_initiated", labels={"kind": "ip"})
        logger.warning(
            "Proxy IP put into backoff",
            proxy_ip=proxy_ip,
            backoff_ms=self.config.ip_backoff_ms_on_error,
            backoff_until=window.backoff_until,
        )

    def is_host_backed_off(self, hostname: str) -> bool:
        window = self._host_windows.get(hostname)
        return window is not None and self._clock() < window.backoff_until

    def snapshot(self) -> RateLimiterState:
        return RateLimiterState(
            host_request_log=[(host, window.to_state()) for host, window in self._host_windows.items()],
            ip_request_log=[(ip, window.to_state()) for ip, window in self._ip_windows.items()],
        )

    def restore(self, state: Optional[RateLimiterState]) -> None:
        """Replace all windows with a snapshot. Pending locks are left untouched."""
        if state is None:
            return
        self._host_windows = {host: RequestWindow.from_state(w) for host, w in state.host_request_log}
        self._ip_windows = {ip: RequestWindow.from_state(w) for ip, w in state.ip_request_log}
        logger.info(
            "Rate limiter state restored",
            hosts_tracked=len(self._host_windows),
            ips_tracked=len(self._ip_windows),
        )

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "enabled": self.config.enabled,
            "hosts_tracked": len(self._host_windows),
            "ips_tracked": len(self._ip_windows),
            "hosts_in_backoff": sorted(h for h in self._host_windows if self.is_host_backed_off(h)),
            "ips_in_backoff": sorted(ip for ip, w in self._ip_windows.items() if now < w.backoff_until),
            "requests_recorded": self._requests_recorded,
            "total_wait_seconds": round(self._total_wait_ms / 1000.0, 3),
        }
