"""Unit tests for the graceful shutdown coordinator."""

import asyncio
import signal

import pytest

from harvestcore.shutdown import ShutdownCoordinator, exit_with_signal_code


class FakeJob:
    """Records hook calls the way an engine would receive them."""

    def __init__(self, busy: bool = False):
        self.stops = 0
        self.saves = []
        self.idle = asyncio.Event()
        if not busy:
            self.idle.set()

    def stop(self):
        self.stops += 1

    async def save(self, trigger):
        self.saves.append(trigger)

    async def wait_idle(self):
        await self.idle.wait()


@pytest.fixture
def job():
    return FakeJob()


@pytest.fixture
def coordinator(job):
    coordinator = ShutdownCoordinator(terminate=lambda signum: None, drain_timeout=1.0)
    coordinator.attach(stop=job.stop, save=job.save, idle=job.wait_idle)
    return coordinator


class TestDrain:
    """Stop, wait for in-flight work, save once."""

    @pytest.mark.asyncio
    async def test_drain_saves_once(self, coordinator, job):
        """Test that repeated drains produce a single save."""
        await coordinator.drain("signal_2")
        await coordinator.drain("error")

        assert job.saves == ["shutdown"]
        assert job.stops >= 1
        assert coordinator.shutdown_requested
        assert coordinator.drained
        assert coordinator.reason == "signal_2"

    @pytest.mark.asyncio
    async def test_concurrent_drains_share_one_save(self, coordinator, job):
        """Test that racing triggers wait on the same drain."""
        await asyncio.gather(coordinator.drain("signal_15"), coordinator.drain("error"), coordinator.drain("interrupted"))
        assert job.saves == ["shutdown"]

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_work(self):
        """Test that the save happens only after the job goes idle."""
        job = FakeJob(busy=True)
        coordinator = ShutdownCoordinator(terminate=lambda signum: None, drain_timeout=5.0)
        coordinator.attach(stop=job.stop, save=job.save, idle=job.wait_idle)

        drain = asyncio.create_task(coordinator.drain("signal_2"))
        await asyncio.sleep(0.01)
        assert job.stops == 1
        assert job.saves == []

        job.idle.set()
        await drain
        assert job.saves == ["shutdown"]

    @pytest.mark.asyncio
    async def test_idle_timeout_still_saves(self):
        """Test that a stuck job is saved once the drain timeout passes."""
        job = FakeJob(busy=True)
        coordinator = ShutdownCoordinator(terminate=lambda signum: None, drain_timeout=0.01)
        coordinator.attach(stop=job.stop, save=job.save, idle=job.wait_idle)

        await coordinator.drain("signal_15")
        assert job.saves == ["shutdown"]

    @pytest.mark.asyncio
    async def test_drain_without_job(self):
        """Test that draining with nothing attached is harmless."""
        coordinator = ShutdownCoordinator(terminate=lambda signum: None)
        await coordinator.drain("signal_2")
        assert coordinator.drained

    @pytest.mark.asyncio
    async def test_attach_resets_for_next_job(self, coordinator, job):
        """Test that a new job gets its own shutdown save."""
        await coordinator.drain("interrupted")
        coordinator.detach()

        second = FakeJob()
        coordinator.attach(stop=second.stop, save=second.save, idle=second.wait_idle)
        assert not coordinator.shutdown_requested
        await coordinator.drain("interrupted")
        assert second.saves == ["shutdown"]
        assert job.saves == ["shutdown"]


class TestGuard:
    """Error-path save."""

    @pytest.mark.asyncio
    async def test_exception_saves_and_reraises(self, coordinator, job):
        """Test that an escaping exception triggers exactly one save."""
        with pytest.raises(RuntimeError, match="boom"):
            async with coordinator.guard():
                raise RuntimeError("boom")
        assert job.saves == ["shutdown"]
        assert coordinator.reason == "error"

    @pytest.mark.asyncio
    async def test_clean_exit_does_not_save(self, coordinator, job):
        """Test that the guard is silent when the job completes."""
        async with coordinator.guard():
            pass
        assert job.saves == []

    @pytest.mark.asyncio
    async def test_cancellation_saves(self, coordinator, job):
        """Test that cancelling the job still checkpoints."""

        async def run():
            async with coordinator.guard():
                await asyncio.sleep(10)

        task = asyncio.create_task(run())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert job.saves == ["shutdown"]


class TestSignals:
    """Signal wiring used by the CLI."""

    @pytest.mark.asyncio
    async def test_signal_drains_then_terminates(self, job):
        """Test that a delivered signal saves and then calls terminate."""
        terminated = []
        coordinator = ShutdownCoordinator(terminate=terminated.append)
        coordinator.attach(stop=job.stop, save=job.save, idle=job.wait_idle)
        coordinator.install_signal_handlers()
        try:
            coordinator._on_signal(int(signal.SIGTERM))
            await asyncio.gather(*coordinator._signal_tasks)
        finally:
            coordinator.remove_signal_handlers()

        assert job.saves == ["shutdown"]
        assert terminated == [int(signal.SIGTERM)]
        assert coordinator.reason == f"signal_{int(signal.SIGTERM)}"

    @pytest.mark.asyncio
    async def test_second_signal_does_not_save_again(self, job):
        """Test that a repeated signal during drain reuses the first drain."""
        terminated = []
        coordinator = ShutdownCoordinator(terminate=terminated.append)
        coordinator.attach(stop=job.stop, save=job.save, idle=job.wait_idle)
        coordinator.install_signal_handlers()
        try:
            coordinator._on_signal(int(signal.SIGINT))
            coordinator._on_signal(int(signal.SIGINT))
            await asyncio.gather(*coordinator._signal_tasks)
        finally:
            coordinator.remove_signal_handlers()

        assert job.saves == ["shutdown"]
        assert terminated == [int(signal.SIGINT), int(signal.SIGINT)]

    def test_default_terminate_exit_code(self):
        """Test the conventional 128 + signum exit status."""
        with pytest.raises(SystemExit) as exc_info:
            exit_with_signal_code(int(signal.SIGINT))
        assert exc_info.value.code == 128 + int(signal.SIGINT)
