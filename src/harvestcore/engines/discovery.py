"""
Breadth-first URL discovery from a seed, bounded by depth and filters.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from harvestcore.checkpoint import derive_job_id
from harvestcore.crawler.url_utils import UrlFilter, extract_hostname, normalize_url
from harvestcore.engines.base import CrawlEngine, EngineState, JobStatus
from harvestcore.errors import JobValidationError, PerItemError
from harvestcore.frontier import GraphFrontier
from harvestcore.observability import metrics
from harvestcore.pipeline import extract_child_links
from harvestcore.state import CrawlItem, DiscoveryCheckpoint
from harvestcore.utils import atomic_write_text, slugify

URL_LIST_FILENAME = "discovered_urls.txt"


@dataclass
class DiscoveryResult:
    job_id: str
    status: str
    start_url: str
    total_urls_discovered: int
    urls_successfully_visited: int
    failed_urls: int
    max_depth: int
    processing_time: float
    output_directory: Optional[str] = None
    url_list_file: Optional[str] = None
    discovered_urls_list: List[str] = field(default_factory=list)
    recent_failures: List[Dict[str, Any]] = field(default_factory=list)
    resumed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DiscoveryEngine(CrawlEngine):
    """
    Crawls outward from a seed URL.

    Items are taken from the frontier in batches of ``concurrency_limit`` and
    the whole batch is awaited before the next one is taken. Children are
    enqueued only while their parent is shallower than ``max_depth``.
    """

    mode = "discovery"

    def __init__(
        self,
        *args: Any,
        url_filter: Optional[UrlFilter] = None,
        output_base_path: Path = Path("harvest_output"),
        timestamp: Optional[Callable[[], str]] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.url_filter = url_filter
        self.output_base_path = Path(output_base_path)
        self._timestamp = timestamp or (lambda: datetime.now().strftime("%Y%m%d_%H%M%S"))
        self.frontier: Optional[GraphFrontier] = None
        self.start_url: Optional[str] = None
        self.max_depth = 0

    def build_checkpoint(self) -> Optional[DiscoveryCheckpoint]:
        if self.frontier is None or self.start_url is None:
            return None
        return DiscoveryCheckpoint(
            original_args=self.original_args,
            start_url=self.start_url,
            max_depth=self.max_depth,
            discovered_urls=self.frontier.discovered_urls(),
            visited_urls=sorted(self.frontier.visited),
            crawl_queue=self.frontier.snapshot_queue(),
            failed_urls=sorted(self.frontier.failed),
            failed_url_details=list(self.failures),
            rate_limiter_state=self.rate_limiter.snapshot(),
            static_proxy_manager_state=self.proxy_assignor.snapshot(),
        )

    def _restore(self, state: DiscoveryCheckpoint) -> None:
        assert self.frontier is not None
        self.frontier.restore(
            discovered=state.discovered_urls,
            visited=state.visited_urls,
            failed=state.failed_urls,
            queue=state.crawl_queue,
        )
        self._restore_shared(state)
        self.resumed = True
        self.logger.info(
            "Resuming discovery from checkpoint",
            job_id=self.job_id,
            discovered=len(self.frontier.discovered),
            visited=len(self.frontier.visited),
            queued=len(self.frontier),
        )

    async def run(self, seed_url: str, max_depth: int, job_args: Optional[Dict[str, Any]] = None) -> DiscoveryResult:
        """
        Discover URLs reachable from ``seed_url``.

        Args:
            seed_url: Starting URL; scheme-less input is treated as https
            max_depth: Maximum link distance from the seed
            job_args: Extra arguments that identify the job (keywords,
                exclude patterns); they feed the job id and are stored in the
                checkpoint

        Raises:
            JobValidationError: If the seed is not a crawlable URL
        """
        started = time.monotonic()
        self.state = EngineState.INITIALIZING

        normalized = normalize_url(seed_url)
        if normalized is None:
            raise JobValidationError(f"Invalid start URL: {seed_url!r}")
        if max_depth < 0:
            raise JobValidationError("max_depth must be >= 0")

        self.start_url = normalized
        self.max_depth = max_depth
        self.original_args = {"start_url": normalized, "max_depth": max_depth, **(job_args or {})}
        self.job_id = derive_job_id(self.mode, self.original_args)
        structlog.contextvars.bind_contextvars(job_id=self.job_id, mode=self.mode)

        self.frontier = GraphFrontier(max_depth, predicate=self.url_filter)
        if self.store is not None:
            state = await self.store.load(self.job_id, DiscoveryCheckpoint)
            if state is not None:
                self._restore(state)
        if not self.resumed:
            self.frontier.seed(normalized)

        self.logger.info("Starting URL discovery", start_url=normalized, max_depth=max_depth, resumed=self.resumed)

        self.state = EngineState.DRAINING
        self._idle.clear()
        try:
            while self.frontier.has_next() and not self._stop_requested:
                batch = self.frontier.take_batch(self.concurrency_limit)
                if not batch:
                    break
                async with asyncio.TaskGroup() as tg:
                    for item in batch:
                        tg.create_task(self._process_item(item))
        finally:
            self._idle.set()

        status = JobStatus.INTERRUPTED if self._stop_requested and self.frontier.has_next() else JobStatus.COMPLETED
        return await self._finalize(status, time.monotonic() - started)

    async def _process_item(self, item: CrawlItem) -> None:
        assert self.frontier is not None
        async with self._semaphore:
            metrics.gauge_add("items_in_flight", 1, labels={"mode": self.mode})
            try:
                page = await self.pipeline.fetch(item.url)
            except PerItemError as e:
                self.frontier.mark_failed(item)
                self.record_failure(item.url, str(e))
                self._count_item("failed")
                self.logger.warning("URL processing failed", url=item.url, depth=item.depth, error=str(e))
            else:
                enqueued = 0
                for link in extract_child_links(page):
                    if self.frontier.offer(link, item):
                        enqueued += 1
                self.frontier.mark_visited(item)
                self._count_item("succeeded")
                self.logger.debug("URL processed", url=item.url, depth=item.depth, links=len(page.links), enqueued=enqueued)
            finally:
                metrics.gauge_add("items_in_flight", -1, labels={"mode": self.mode})

        await self._maybe_autosave()

    def _output_directory(self) -> Path:
        host = extract_hostname(self.start_url or "") or "unknown"
        return self.output_base_path / f"{slugify(host, replacement='_')}_discovery_{self._timestamp()}"

    async def _finalize(self, status: JobStatus, elapsed: float) -> DiscoveryResult:
        assert self.frontier is not None and self.start_url is not None and self.job_id is not None
        self.state = EngineState.FINALIZING

        output_dir: Optional[Path] = None
        url_list_file: Optional[Path] = None
        discovered = self.frontier.discovered_urls()

        if status is JobStatus.COMPLETED:
            output_dir = self._output_directory()
            url_list_file = output_dir / URL_LIST_FILENAME
            await asyncio.to_thread(atomic_write_text, url_list_file, "\n".join(discovered))

        self._finish_checkpoint(status)
        self.state = EngineState.DONE

        result = DiscoveryResult(
            job_id=self.job_id,
            status=status.value,
            start_url=self.start_url,
            total_urls_discovered=len(discovered),
            urls_successfully_visited=len(self.frontier.visited),
            failed_urls=len(self.frontier.failed),
            max_depth=self.max_depth,
            processing_time=round(elapsed, 3),
            output_directory=str(output_dir) if output_dir else None,
            url_list_file=str(url_list_file) if url_list_file else None,
            discovered_urls_list=discovered,
            recent_failures=self.recent_failures(),
            resumed=self.resumed,
        )

        self.logger.info(
            "URL discovery finished",
            status=result.status,
            discovered=result.total_urls_discovered,
            visited=result.urls_successfully_visited,
            failed=result.failed_urls,
            duration=result.processing_time,
        )
        return result
