"""
Service facade over the crawl engines.

Owns the long-lived rate limiter and proxy assignor, builds one engine per
job, and wires each job to the shutdown coordinator.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence, TypeVar

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from harvestcore.checkpoint import CheckpointStore
from harvestcore.config import Config
from harvestcore.crawler.http_session import HttpFetchSession
from harvestcore.crawler.proxy_assignor import ProxyAssignor
from harvestcore.crawler.rate_limiter import SlidingWindowRateLimiter
from harvestcore.crawler.url_utils import UrlFilter, normalize_url
from harvestcore.engines import BatchEngine, CrawlEngine, DiscoveryEngine, DiscoveryResult, ScrapingResult
from harvestcore.engines.base import RECENT_FAILURE_LIMIT, JobStatus
from harvestcore.engines.batch import prepare_url_list
from harvestcore.errors import JobValidationError
from harvestcore.protocols import BrowserSession
from harvestcore.shutdown import ShutdownCoordinator
from harvestcore.state import FailedRecord

OptionsT = TypeVar("OptionsT", bound=BaseModel)
ResultT = TypeVar("ResultT", DiscoveryResult, ScrapingResult)


class DiscoveryOptions(BaseModel):
    """Per-job options for URL discovery."""

    max_depth: int = Field(default=10, ge=1, le=100, description="Maximum link distance from the seed.")
    max_concurrent: Optional[int] = Field(
        default=None, ge=1, le=10, description="Pages processed concurrently; crawler.max_concurrent_pages when unset."
    )
    keywords: List[str] = Field(default_factory=list, description="Only follow URLs containing one of these.")
    exclude_patterns: List[str] = Field(default_factory=list, description="Extra regexes of URLs to skip.")


class ScrapeOptions(BaseModel):
    """Per-job options for batch scraping."""

    urls: Optional[List[str]] = None
    url_file: Optional[Path] = None
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=10)
    wait_time_min_ms: int = Field(default=1000, ge=0, description="Minimum pause after each page.")
    wait_time_max_ms: int = Field(default=3000, ge=0, description="Maximum pause after each page.")
    content_selectors: List[str] = Field(default_factory=list, description="CSS selectors tried before the page body.")
    output_dir: Optional[Path] = Field(default=None, description="Directory for extracted text files.")

    @model_validator(mode="after")
    def check_inputs(self) -> "ScrapeOptions":
        if not self.urls and self.url_file is None:
            raise ValueError("Either urls or url_file must be provided")
        if self.wait_time_max_ms < self.wait_time_min_ms:
            raise ValueError("wait_time_max_ms must be >= wait_time_min_ms")
        return self


def _coerce_options(model: type[OptionsT], options: Optional[OptionsT], overrides: Dict[str, Any]) -> OptionsT:
    try:
        if options is None:
            return model.model_validate(overrides)
        if overrides:
            return model.model_validate({**options.model_dump(), **overrides})
        return options
    except ValidationError as e:
        raise JobValidationError(f"Invalid {model.__name__}: {e}") from e


class HarvestService:
    """
    Entry point for discovery and batch jobs.

    A ``session`` passed in is shared by every job and never closed here;
    without one, each job opens and closes its own ``HttpFetchSession``.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        session: Optional[BrowserSession] = None,
        coordinator: Optional[ShutdownCoordinator] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        proxy_assignor: Optional[ProxyAssignor] = None,
    ):
        self.config = config or Config()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(self.config.rate_limit)
        self.proxy_assignor = proxy_assignor or ProxyAssignor(self.config.proxy)
        self.coordinator = coordinator or ShutdownCoordinator()
        self.store = CheckpointStore(self.config.state_dir) if self.config.checkpoint.enabled else None
        self._session = session
        self.logger = structlog.get_logger(self.__class__.__name__)

        self.active_engine: Optional[CrawlEngine] = None
        self._failed_by_job: Dict[str, List[FailedRecord]] = {}
        self._jobs: Dict[str, Dict[str, int]] = {
            "discovery": {"completed": 0, "interrupted": 0},
            "batch": {"completed": 0, "interrupted": 0},
        }
        self._processed_count = 0

    @asynccontextmanager
    async def _session_for(self, options: Optional[ScrapeOptions] = None) -> AsyncIterator[BrowserSession]:
        if self._session is not None:
            yield self._session
            return

        session = HttpFetchSession(
            self.config.crawler,
            content_selectors=options.content_selectors if options else (),
            output_dir=options.output_dir if options else None,
        )
        try:
            yield session
        finally:
            await session.close()

    def _engine_kwargs(self, max_concurrent: Optional[int]) -> Dict[str, Any]:
        return {
            "store": self.store,
            "concurrency_limit": max_concurrent or self.config.crawler.max_concurrent_pages,
            "auto_save_interval": self.config.checkpoint.auto_save_interval,
            "delete_on_completion": self.config.checkpoint.delete_on_completion,
        }

    async def _run(self, engine: CrawlEngine, job: Awaitable[ResultT]) -> ResultT:
        self.coordinator.attach(stop=engine.request_shutdown, save=engine.save_checkpoint, idle=engine.wait_idle)
        self.active_engine = engine
        try:
            async with self.coordinator.guard():
                result = await job
            if result.status == JobStatus.INTERRUPTED.value:
                await self.coordinator.drain("interrupted")
            return result
        finally:
            if engine.job_id is not None:
                self._failed_by_job[engine.job_id] = list(engine.failures)
            self._processed_count += engine.processed_this_session
            self.coordinator.detach()
            self.active_engine = None
            structlog.contextvars.unbind_contextvars("job_id", "mode")

    async def discover(
        self, seed_url: str, options: Optional[DiscoveryOptions] = None, **overrides: Any
    ) -> DiscoveryResult:
        """
        Discover URLs reachable from ``seed_url``.

        Raises:
            JobValidationError: If the seed URL or options are invalid
        """
        opts = _coerce_options(DiscoveryOptions, options, overrides)
        if normalize_url(seed_url) is None:
            raise JobValidationError(f"Invalid start URL: {seed_url!r}")

        max_depth = min(opts.max_depth, self.config.crawler.max_depth)
        url_filter = UrlFilter.from_config(
            self.config.url_filtering,
            extra_exclude_patterns=opts.exclude_patterns,
            keywords=opts.keywords,
        )

        async with self._session_for() as session:
            engine = DiscoveryEngine(
                self.rate_limiter,
                self.proxy_assignor,
                session,
                url_filter=url_filter,
                output_base_path=self.config.crawler.output_base_path,
                **self._engine_kwargs(opts.max_concurrent),
            )
            job_args = {"keywords": opts.keywords, "exclude_patterns": opts.exclude_patterns}
            result = await self._run(engine, engine.run(seed_url, max_depth, job_args=job_args))

        self._jobs["discovery"][result.status] += 1
        return result

    async def scrape(
        self,
        urls: Optional[Sequence[str]] = None,
        url_file: Optional[Path] = None,
        options: Optional[ScrapeOptions] = None,
        **overrides: Any,
    ) -> ScrapingResult:
        """
        Process a list of URLs given inline and/or as a line-delimited file.

        Raises:
            JobValidationError: If no valid URL is given or options are invalid
        """
        if urls is not None:
            overrides["urls"] = list(urls)
        if url_file is not None:
            overrides["url_file"] = Path(url_file)
        opts = _coerce_options(ScrapeOptions, options, overrides)
        prepared = prepare_url_list(opts.urls, opts.url_file)

        async with self._session_for(opts) as session:
            engine = BatchEngine(
                self.rate_limiter,
                self.proxy_assignor,
                session,
                wait_time_min_ms=opts.wait_time_min_ms,
                wait_time_max_ms=opts.wait_time_max_ms,
                **self._engine_kwargs(opts.max_concurrent),
            )
            recorded = opts.model_dump(mode="json", exclude={"urls"}, exclude_none=True)
            result = await self._run(engine, engine.run(prepared, options=recorded))

        self._jobs["batch"][result.status] += 1
        return result

    def request_shutdown(self, reason: str = "requested") -> None:
        self.coordinator.request_shutdown(reason)

    def _all_failures(self) -> List[FailedRecord]:
        return [record for records in self._failed_by_job.values() for record in records]

    def get_failed(self, limit: int = 50, include_error_details: bool = True) -> List[Dict[str, Any]]:
        """Most recent failed URLs across all jobs run by this service, newest last."""
        if not 1 <= limit <= 100:
            raise JobValidationError("limit must be between 1 and 100")
        records = self._all_failures()[-limit:]
        if include_error_details:
            return [r.model_dump() for r in records]
        return [{"url": r.url} for r in records]

    def clear_failed(self) -> int:
        cleared = len(self._all_failures())
        self._failed_by_job.clear()
        self.logger.info("Failed URL list cleared", cleared=cleared)
        return cleared

    def get_stats(self) -> Dict[str, Any]:
        failures = self._all_failures()
        return {
            "processed_count": self._processed_count,
            "failed_count": len(failures),
            "jobs": {mode: dict(counts) for mode, counts in self._jobs.items()},
            "active_job": self.active_engine.job_id if self.active_engine else None,
            "configuration": {
                "max_concurrent_pages": self.config.crawler.max_concurrent_pages,
                "navigation_timeout": self.config.crawler.navigation_timeout,
                "output_base_path": str(self.config.crawler.output_base_path),
                "checkpoint_dir": str(self.config.state_dir) if self.store else None,
            },
            "rate_limiter": self.rate_limiter.get_stats(),
            "proxies": self.proxy_assignor.get_stats(),
            "recent_failures": [f.model_dump() for f in failures[-RECENT_FAILURE_LIMIT:]],
        }
