"""
Shared fixtures for harvestcore tests.

Time-dependent components are driven by ``FakeClock``; crawl engines talk to
``FakeBrowserSession`` instead of the network.
"""

from pathlib import Path

import pytest

from harvestcore.config import CheckpointConfig, Config, CrawlerConfig, ProxyConfig, RateLimitConfig
from harvestcore.crawler.proxy_assignor import ProxyAssignor
from harvestcore.crawler.rate_limiter import SlidingWindowRateLimiter
from tests.helpers import FakeBrowserSession, FakeClock

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Job runs across engines, store and coordinator")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_session() -> FakeBrowserSession:
    return FakeBrowserSession()


@pytest.fixture
def unlimited_rate_limiter() -> SlidingWindowRateLimiter:
    """Disabled limiter; every acquire returns immediately."""
    return SlidingWindowRateLimiter(RateLimitConfig(enabled=False))


@pytest.fixture
def direct_assignor() -> ProxyAssignor:
    return ProxyAssignor(ProxyConfig())


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Config writing under ``tmp_path`` with rate limiting off."""
    return Config(
        crawler=CrawlerConfig(output_base_path=tmp_path / "output", user_agent_rotation=False),
        rate_limit=RateLimitConfig(enabled=False),
        checkpoint=CheckpointConfig(state_dir=tmp_path / "states", auto_save_interval=0),
    )
