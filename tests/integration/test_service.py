"""
Integration tests for the service facade: stats, failed-URL queries and the
shutdown wiring.
"""

import json

import pytest

from harvestcore.config import ProxyConfig
from harvestcore.crawler.rate_limiter import SlidingWindowRateLimiter
from harvestcore.errors import JobValidationError
from harvestcore.service import HarvestService
from tests.helpers import FakeBrowserSession

URLS = ["https://a.test/1", "https://a.test/2", "https://b.test/1"]
NO_WAIT = {"wait_time_min_ms": 0, "wait_time_max_ms": 0}


@pytest.mark.integration
class TestHarvestService:
    """Facade behavior across jobs."""

    @pytest.mark.asyncio
    async def test_stats_after_jobs(self, test_config):
        """Test aggregated statistics across a batch and a discovery job."""
        session = FakeBrowserSession(errors={URLS[1]: ValueError("HTTP 500")})
        service = HarvestService(test_config, session=session)

        await service.scrape(URLS, **NO_WAIT)
        await service.discover("https://c.test", max_depth=1)

        stats = service.get_stats()
        assert stats["processed_count"] == 4
        assert stats["failed_count"] == 1
        assert stats["jobs"]["batch"] == {"completed": 1, "interrupted": 0}
        assert stats["jobs"]["discovery"] == {"completed": 1, "interrupted": 0}
        assert stats["active_job"] is None
        assert stats["configuration"]["checkpoint_dir"] == str(test_config.state_dir)
        assert stats["rate_limiter"]["enabled"] is False
        assert stats["recent_failures"][0]["url"] == URLS[1]

    @pytest.mark.asyncio
    async def test_get_failed_and_clear(self, test_config):
        """Test failed URL listing, detail toggling and clearing."""
        errors = {url: ValueError(f"failed {url}") for url in URLS}
        service = HarvestService(test_config, session=FakeBrowserSession(errors=errors))
        await service.scrape(URLS, max_concurrent=1, **NO_WAIT)

        assert [f["url"] for f in service.get_failed()] == URLS
        assert service.get_failed(limit=1) == [service.get_failed()[-1]]
        assert service.get_failed(include_error_details=False)[0] == {"url": URLS[0]}

        assert service.clear_failed() == 3
        assert service.get_failed() == []

    def test_get_failed_limit_range(self, test_config, fake_session):
        """Test that the limit must be between 1 and 100."""
        service = HarvestService(test_config, session=fake_session)
        with pytest.raises(JobValidationError):
            service.get_failed(limit=0)
        with pytest.raises(JobValidationError):
            service.get_failed(limit=101)

    @pytest.mark.asyncio
    async def test_shared_session_not_closed(self, test_config, fake_session):
        """Test that a caller-provided session outlives the job."""
        service = HarvestService(test_config, session=fake_session)
        await service.scrape(URLS[:1], **NO_WAIT)
        assert not fake_session.closed

    @pytest.mark.asyncio
    async def test_proxies_passed_to_session(self, test_config):
        """Test that sticky proxies reach the browser session per host."""
        test_config.proxy = ProxyConfig(static_proxies=["http://10.0.0.1:8080", "http://10.0.0.2:8080"])
        session = FakeBrowserSession()
        service = HarvestService(test_config, session=session)

        await service.scrape(URLS, max_concurrent=1, **NO_WAIT)

        by_url = dict(session.calls)
        assert by_url[URLS[0]] == by_url[URLS[1]]
        assert by_url[URLS[0]] != by_url[URLS[2]]
        assert service.get_stats()["proxies"]["host_assignments"] == 2

    @pytest.mark.asyncio
    async def test_error_escaping_job_saves_checkpoint(self, test_config):
        """Test that an unexpected error still leaves a checkpoint behind."""

        class BrokenLimiter(SlidingWindowRateLimiter):
            calls = 0

            async def acquire(self, hostname, proxy_ip=None):
                self.calls += 1
                if self.calls == 2:
                    raise RuntimeError("limiter broke")
                return await super().acquire(hostname, proxy_ip)

        service = HarvestService(
            test_config, session=FakeBrowserSession(), rate_limiter=BrokenLimiter(test_config.rate_limit)
        )

        with pytest.raises(ExceptionGroup):
            await service.scrape(URLS, max_concurrent=1, **NO_WAIT)

        saved = json.loads(next(test_config.state_dir.glob("*.json")).read_text(encoding="utf-8"))
        assert URLS[0] not in saved["urlsToProcess"]
        assert URLS[1] in saved["urlsToProcess"]
        assert len(list(test_config.state_dir.glob("*.json"))) == 1
        assert service.coordinator.drained
        assert service.active_engine is None
