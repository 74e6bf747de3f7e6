"""
Batch processing of a flat URL list.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from harvestcore.checkpoint import derive_job_id
from harvestcore.crawler.url_utils import normalize_url
from harvestcore.engines.base import CrawlEngine, EngineState, JobStatus
from harvestcore.errors import JobValidationError, PerItemError
from harvestcore.frontier import ListFrontier
from harvestcore.observability import metrics
from harvestcore.state import BatchCheckpoint

logger = structlog.get_logger(__name__)


def read_url_file(path: Path) -> List[str]:
    """Read one URL per line, skipping blank lines and ``#`` comments."""
    path = Path(path)
    if not path.is_file():
        raise JobValidationError(f"URL file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip() and not line.strip().startswith("#")]
    except (OSError, UnicodeDecodeError) as e:
        raise JobValidationError(f"Cannot read URL file {path}: {e}") from e


def prepare_url_list(urls: Optional[Iterable[str]] = None, url_file: Optional[Path] = None) -> List[str]:
    """
    Build the canonical, de-duplicated input list for a batch job.

    Invalid entries are skipped with a warning.

    Raises:
        JobValidationError: If no valid URL remains
    """
    raw: List[str] = list(urls or [])
    if url_file is not None:
        raw.extend(read_url_file(url_file))

    prepared: List[str] = []
    seen = set()
    skipped = 0
    for entry in raw:
        normalized = normalize_url(entry)
        if normalized is None:
            skipped += 1
            logger.warning("Skipping invalid URL", url=entry)
            continue
        if normalized not in seen:
            seen.add(normalized)
            prepared.append(normalized)

    if not prepared:
        raise JobValidationError("No valid URLs to process")
    if skipped:
        logger.info("Invalid URLs skipped", skipped=skipped, valid=len(prepared))
    return prepared


@dataclass
class ContentSummary:
    total_content_length: int = 0
    average_content_length: float = 0.0
    output_files: List[str] = field(default_factory=list)


@dataclass
class ScrapingResult:
    job_id: str
    status: str
    total_urls: int
    successful_urls: int
    failed_urls: int
    processed_url_count: int
    processed_this_session: int
    processing_time: float
    summary: ContentSummary = field(default_factory=ContentSummary)
    recent_failures: List[Dict[str, Any]] = field(default_factory=list)
    resumed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BatchEngine(CrawlEngine):
    """
    Runs every URL of a list through the per-URL pipeline.

    Dispatch is FIFO under a semaphore of ``concurrency_limit``. A URL leaves
    the remaining list only once it has completed, successfully or not.
    """

    mode = "batch"

    def __init__(
        self,
        *args: Any,
        wait_time_min_ms: int = 0,
        wait_time_max_ms: int = 0,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        if wait_time_max_ms < wait_time_min_ms:
            raise ValueError("wait_time_max_ms must be >= wait_time_min_ms")
        self.wait_time_min_ms = wait_time_min_ms
        self.wait_time_max_ms = wait_time_max_ms
        self._sleep = sleep or asyncio.sleep
        self.frontier: Optional[ListFrontier] = None
        self.processed_url_count = 0
        self.total_urls = 0
        self._content_lengths: List[int] = []
        self._output_files: List[str] = []

    def build_checkpoint(self) -> Optional[BatchCheckpoint]:
        if self.frontier is None:
            return None
        return BatchCheckpoint(
            original_args=self.original_args,
            urls_to_process=self.frontier.snapshot(),
            processed_url_count=self.processed_url_count,
            total_urls=self.total_urls,
            failed_url_details=list(self.failures),
            rate_limiter_state=self.rate_limiter.snapshot(),
            static_proxy_manager_state=self.proxy_assignor.snapshot(),
        )

    def _restore(self, state: BatchCheckpoint, fallback_total: int) -> None:
        self.frontier = ListFrontier(state.urls_to_process)
        self.processed_url_count = state.processed_url_count
        self.total_urls = state.total_urls or fallback_total
        self._restore_shared(state)
        self.resumed = True
        self.logger.info(
            "Resuming batch from checkpoint",
            job_id=self.job_id,
            processed=self.processed_url_count,
            remaining=len(self.frontier),
            failed=len(self.failures),
        )

    async def run(
        self,
        urls: Sequence[str],
        job_args: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ScrapingResult:
        """
        Process ``urls``, which must already be canonical (see ``prepare_url_list``).

        ``job_args`` take part in the job id; ``options`` are only recorded in
        the checkpoint's ``originalArgs`` so a resume may change them.

        Raises:
            JobValidationError: If ``urls`` is empty
        """
        started = time.monotonic()
        self.state = EngineState.INITIALIZING
        if not urls:
            raise JobValidationError("No valid URLs to process")

        extra = dict(job_args or {})
        self.job_id = derive_job_id(self.mode, {"urls": list(urls), **extra})
        self.original_args = {"url_count": len(urls), **(options or {}), **extra}
        structlog.contextvars.bind_contextvars(job_id=self.job_id, mode=self.mode)

        if self.store is not None:
            state = await self.store.load(self.job_id, BatchCheckpoint)
            if state is not None:
                self._restore(state, fallback_total=len(urls))
        if not self.resumed:
            self.frontier = ListFrontier(urls)
            self.total_urls = len(self.frontier)

        assert self.frontier is not None
        self.logger.info(
            "Starting batch processing",
            total=self.total_urls,
            remaining=len(self.frontier),
            concurrency=self.concurrency_limit,
            resumed=self.resumed,
        )

        self.state = EngineState.DRAINING
        self._idle.clear()
        try:
            async with asyncio.TaskGroup() as tg:
                while self.frontier.has_next() and not self._stop_requested:
                    await self._semaphore.acquire()
                    if self._stop_requested:
                        self._semaphore.release()
                        break
                    url = self.frontier.next()
                    assert url is not None
                    tg.create_task(self._process_url(url))
        finally:
            self._idle.set()

        status = JobStatus.INTERRUPTED if self.frontier.remaining else JobStatus.COMPLETED
        return self._finalize(status, time.monotonic() - started)

    async def _process_url(self, url: str) -> None:
        assert self.frontier is not None
        metrics.gauge_add("items_in_flight", 1, labels={"mode": self.mode})
        try:
            try:
                page = await self.pipeline.fetch(url)
            except PerItemError as e:
                self.record_failure(url, str(e))
                outcome = "failed"
            else:
                self._content_lengths.append(page.content_length)
                if page.output_path:
                    self._output_files.append(page.output_path)
                outcome = "succeeded"
                await self._pause_between_pages()

            self.frontier.complete(url)
            self.processed_url_count += 1
            self._count_item(outcome)
        finally:
            metrics.gauge_add("items_in_flight", -1, labels={"mode": self.mode})
            self._semaphore.release()

        await self._maybe_autosave()

    async def _pause_between_pages(self) -> None:
        if self.wait_time_max_ms <= 0:
            return
        delay_ms = random.randint(self.wait_time_min_ms, self.wait_time_max_ms)
        await self._sleep(delay_ms / 1000.0)

    def _finalize(self, status: JobStatus, elapsed: float) -> ScrapingResult:
        assert self.job_id is not None
        self.state = EngineState.DONE
        self._finish_checkpoint(status)

        total_length = sum(self._content_lengths)
        summary = ContentSummary(
            total_content_length=total_length,
            average_content_length=round(total_length / len(self._content_lengths), 1) if self._content_lengths else 0.0,
            output_files=list(self._output_files),
        )
        failed = len(self.failures)
        result = ScrapingResult(
            job_id=self.job_id,
            status=status.value,
            total_urls=self.total_urls,
            successful_urls=max(self.processed_url_count - failed, 0),
            failed_urls=failed,
            processed_url_count=self.processed_url_count,
            processed_this_session=self.processed_this_session,
            processing_time=round(elapsed, 3),
            summary=summary,
            recent_failures=self.recent_failures(),
            resumed=self.resumed,
        )
        self.logger.info(
            "Batch processing finished",
            status=result.status,
            processed=result.processed_url_count,
            succeeded=result.successful_urls,
            failed=result.failed_urls,
            duration=result.processing_time,
        )
        return result
