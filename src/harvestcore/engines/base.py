"""
Shared machinery for the discovery and batch engines.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from harvestcore.checkpoint import CheckpointStore
from harvestcore.crawler.proxy_assignor import ProxyAssignor
from harvestcore.crawler.rate_limiter import SlidingWindowRateLimiter
from harvestcore.observability import metrics
from harvestcore.pipeline import UrlPipeline
from harvestcore.protocols import BrowserSession
from harvestcore.state import CheckpointState, FailedRecord

RECENT_FAILURE_LIMIT = 5


class EngineState(str, Enum):
    INITIALIZING = "initializing"
    DRAINING = "draining"
    FINALIZING = "finalizing"
    DONE = "done"


class JobStatus(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class CrawlEngine:
    """
    Base class owning the per-job bookkeeping both modes share.

    Subclasses implement ``build_checkpoint`` and their own ``run``.
    """

    mode = "crawl"

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        proxy_assignor: ProxyAssignor,
        session: BrowserSession,
        store: Optional[CheckpointStore] = None,
        concurrency_limit: int = 3,
        auto_save_interval: int = 100,
        delete_on_completion: bool = True,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")

        self.rate_limiter = rate_limiter
        self.proxy_assignor = proxy_assignor
        self.store = store
        self.concurrency_limit = concurrency_limit
        self.auto_save_interval = auto_save_interval
        self.delete_on_completion = delete_on_completion
        self.pipeline = UrlPipeline(rate_limiter, proxy_assignor, session, self.mode)
        self.logger = structlog.get_logger(self.__class__.__name__)

        self.job_id: Optional[str] = None
        self.original_args: Dict[str, Any] = {}
        self.state = EngineState.INITIALIZING
        self.failures: List[FailedRecord] = []
        self.processed_this_session = 0
        self.resumed = False

        self._semaphore = asyncio.Semaphore(concurrency_limit)
        self._stop_requested = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._save_lock = asyncio.Lock()

    # --- Shutdown hooks ---

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_shutdown(self) -> None:
        """Stop dispatching new items; in-flight items run to completion."""
        self._stop_requested = True

    async def wait_idle(self) -> None:
        await self._idle.wait()

    # --- Checkpointing ---

    def build_checkpoint(self) -> Optional[CheckpointState]:
        """Snapshot of the job, or None before the job has any state to save."""
        raise NotImplementedError

    def _restore_shared(self, state: CheckpointState) -> None:
        self.failures = list(state.failed_url_details)
        self.rate_limiter.restore(state.rate_limiter_state)
        self.proxy_assignor.restore(state.static_proxy_manager_state)

    async def save_checkpoint(self, trigger: str = "periodic") -> Optional[Path]:
        if self.store is None or self.job_id is None:
            return None
        async with self._save_lock:
            state = self.build_checkpoint()
            if state is None:
                return None
            return await self.store.save(self.job_id, state, trigger=trigger)

    async def _maybe_autosave(self) -> None:
        if self.auto_save_interval and self.processed_this_session % self.auto_save_interval == 0:
            await self.save_checkpoint("periodic")

    def _finish_checkpoint(self, status: JobStatus) -> None:
        if self.store is None or self.job_id is None:
            return
        if status is JobStatus.COMPLETED and self.delete_on_completion:
            self.store.delete(self.job_id)

    # --- Failures ---

    def record_failure(self, url: str, error: str) -> FailedRecord:
        record = FailedRecord(url=url, error=error)
        self.failures.append(record)
        return record

    def recent_failures(self, limit: int = RECENT_FAILURE_LIMIT) -> List[Dict[str, Any]]:
        return [f.model_dump() for f in self.failures[-limit:]] if limit > 0 else []

    def _count_item(self, outcome: str) -> None:
        self.processed_this_session += 1
        metrics.increment("items_completed", labels={"mode": self.mode, "outcome": outcome})
