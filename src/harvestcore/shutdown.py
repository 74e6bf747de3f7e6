"""
Graceful shutdown for crawl jobs.

A running job attaches itself to a ``ShutdownCoordinator`` with three hooks:
``stop`` (stop dispatching new work), ``idle`` (wait for in-flight work to
finish) and ``save`` (write a checkpoint). The coordinator guarantees at
most one shutdown save per job, whether the trigger is SIGINT/SIGTERM or an
exception escaping the job.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

StopHook = Callable[[], None]
IdleHook = Callable[[], Awaitable[None]]
SaveHook = Callable[[str], Awaitable[Any]]
Terminator = Callable[[int], None]

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def exit_with_signal_code(signum: int) -> None:
    raise SystemExit(128 + signum)


class ShutdownCoordinator:
    """Single-shot drain-and-save for the active job."""

    def __init__(self, terminate: Optional[Terminator] = None, drain_timeout: float = 30.0):
        self._terminate = terminate or exit_with_signal_code
        self.drain_timeout = drain_timeout
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._stop_hook: Optional[StopHook] = None
        self._idle_hook: Optional[IdleHook] = None
        self._save_hook: Optional[SaveHook] = None

        self._shutdown_requested = False
        self._drain_task: Optional[asyncio.Task[None]] = None
        self.reason: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed: List[int] = []
        self._original_handlers: Dict[int, Any] = {}
        self._signal_tasks: List[asyncio.Task[None]] = []

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def drained(self) -> bool:
        return self._drain_task is not None and self._drain_task.done()

    def attach(self, stop: StopHook, save: SaveHook, idle: Optional[IdleHook] = None) -> None:
        self._stop_hook = stop
        self._save_hook = save
        self._idle_hook = idle
        self._drain_task = None
        self._shutdown_requested = False
        self.reason = None

    def detach(self) -> None:
        self._stop_hook = None
        self._save_hook = None
        self._idle_hook = None

    def request_shutdown(self, reason: str = "requested") -> None:
        """Stop dispatching new work. In-flight items are left to finish."""
        if not self._shutdown_requested:
            self.logger.info("Shutdown requested", reason=reason)
            self.reason = reason
        self._shutdown_requested = True
        if self._stop_hook is not None:
            self._stop_hook()

    async def drain(self, reason: str) -> None:
        """
        Stop the job and save its checkpoint once.

        Concurrent and repeated calls all wait on the first drain; only the
        first performs the save.
        """
        if self._drain_task is None:
            self._drain_task = asyncio.ensure_future(self._do_drain(reason))
        await asyncio.shield(self._drain_task)

    async def _do_drain(self, reason: str) -> None:
        self.request_shutdown(reason)
        self.remove_signal_handlers()

        if self._idle_hook is not None:
            try:
                async with asyncio.timeout(self.drain_timeout):
                    await self._idle_hook()
            except TimeoutError:
                self.logger.warning("In-flight work did not finish before shutdown save", timeout=self.drain_timeout)

        if self._save_hook is None:
            self.logger.info("Shutdown drain finished with no active job", reason=reason)
            return

        await self._save_hook("shutdown")
        self.logger.info("Checkpoint saved during graceful shutdown", reason=reason)

    # --- Signal wiring (CLI only) ---

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        self._loop = loop

        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, int(sig))
            except NotImplementedError:
                # Windows event loops do not support add_signal_handler
                self._original_handlers[int(sig)] = signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(self._on_signal, signum)
                )
            self._installed.append(int(sig))

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for signum in self._installed:
            if signum in self._original_handlers:
                signal.signal(signum, self._original_handlers.pop(signum))
            else:
                self._loop.remove_signal_handler(signum)
        self._installed.clear()

    def _on_signal(self, signum: int) -> None:
        self.logger.info("Received signal, initiating shutdown", signal=signum)
        assert self._loop is not None
        task = self._loop.create_task(self._drain_then_exit(signum))
        self._signal_tasks.append(task)

    async def _drain_then_exit(self, signum: int) -> None:
        try:
            await self.drain(f"signal_{signum}")
        finally:
            self._terminate(signum)

    @asynccontextmanager
    async def guard(self) -> AsyncIterator["ShutdownCoordinator"]:
        """Save a checkpoint if the wrapped job raises, then re-raise."""
        try:
            yield self
        except (Exception, asyncio.CancelledError) as e:
            self.logger.error("Job aborted, saving checkpoint", error=str(e) or type(e).__name__)
            await self.drain("error")
            raise
