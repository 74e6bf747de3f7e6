"""
Unit tests for checkpoint models, job ids and the checkpoint store.
"""

import json

import pytest

from harvestcore.checkpoint import CheckpointStore, derive_job_id
from harvestcore.state import (
    CHECKPOINT_VERSION,
    BatchCheckpoint,
    CrawlItem,
    DiscoveryCheckpoint,
    FailedRecord,
    ProxyAssignorState,
    RateLimiterState,
    WindowState,
)


@pytest.fixture
def store(tmp_path):
    return CheckpointStore(tmp_path / "states")


def full_discovery_state() -> DiscoveryCheckpoint:
    return DiscoveryCheckpoint(
        original_args={"start_url": "https://a.test", "max_depth": 2, "keywords": ["docs"]},
        start_url="https://a.test",
        max_depth=2,
        discovered_urls=["https://a.test", "https://a.test/x", "https://a.test/y"],
        visited_urls=["https://a.test"],
        crawl_queue=[CrawlItem(url="https://a.test/x", depth=1), CrawlItem(url="https://a.test/y", depth=1)],
        failed_urls=["https://a.test/broken"],
        failed_url_details=[FailedRecord(url="https://a.test/broken", error="HTTP 500")],
        rate_limiter_state=RateLimiterState(
            host_request_log=[("a.test", WindowState(timestamps=[1.0, 2.0], last_request_time=2.0, backoff_until=0))],
            ip_request_log=[("10.0.0.1", WindowState(timestamps=[2.0], last_request_time=2.0, backoff_until=99.0))],
        ),
        static_proxy_manager_state=ProxyAssignorState(host_to_ip_map=[("a.test", "http://10.0.0.1:8080")], current_ip_index=1),
    )


class TestWireFormat:
    """camelCase JSON layout."""

    def test_keys_are_camel_case(self):
        """Test that the wire form uses camelCase keys throughout."""
        wire = full_discovery_state().to_wire()
        assert wire["version"] == CHECKPOINT_VERSION
        assert wire["startUrl"] == "https://a.test"
        assert wire["crawlQueue"][0] == {"url": "https://a.test/x", "depth": 1}
        assert wire["failedUrlDetails"][0]["failedAt"]
        assert wire["failedUrlDetails"][0]["retryCount"] == 0
        assert wire["rateLimiterState"]["hostRequestLog"][0][0] == "a.test"
        assert wire["rateLimiterState"]["hostRequestLog"][0][1]["lastRequestTime"] == 2.0
        assert wire["staticProxyManagerState"]["hostToIpMap"] == [["a.test", "http://10.0.0.1:8080"]]
        assert wire["staticProxyManagerState"]["currentIpIndex"] == 1

    def test_accepts_snake_case(self):
        """Test that models can also be built from attribute names."""
        state = BatchCheckpoint.model_validate({"urls_to_process": ["https://a.test"], "total_urls": 1})
        assert state.urls_to_process == ["https://a.test"]

    def test_crawl_item_child(self):
        """Test that children are one level deeper."""
        parent = CrawlItem(url="https://a.test", depth=2)
        assert parent.child("https://a.test/x") == CrawlItem(url="https://a.test/x", depth=3)


class TestDeriveJobId:
    """Stable job identifiers."""

    def test_stable_across_key_order(self):
        """Test that argument order does not change the id."""
        a = derive_job_id("discovery", {"start_url": "https://a.test", "max_depth": 2})
        b = derive_job_id("discovery", {"max_depth": 2, "start_url": "https://a.test"})
        assert a == b

    def test_format(self):
        """Test the mode-host-hash layout."""
        job_id = derive_job_id("discovery", {"start_url": "https://Docs.A.test/x", "max_depth": 2})
        mode, rest = job_id.split("-", 1)
        host, digest = rest.rsplit("-", 1)
        assert mode == "discovery"
        assert host == "docs.a.test"
        assert len(digest) == 16

    def test_batch_without_host(self):
        """Test that batch jobs use a fixed host segment."""
        assert derive_job_id("batch", {"urls": ["https://a.test"]}).startswith("batch-batch-")

    def test_different_args_different_ids(self):
        """Test that changing arguments changes the id."""
        a = derive_job_id("batch", {"urls": ["https://a.test"]})
        b = derive_job_id("batch", {"urls": ["https://b.test"]})
        assert a != b


class TestCheckpointStore:
    """Save, load and delete."""

    @pytest.mark.asyncio
    async def test_round_trip_every_field(self, store):
        """Test that a saved checkpoint loads back equal."""
        state = full_discovery_state()
        path = await store.save("discovery-a.test-0123456789abcdef", state, trigger="periodic")

        assert path.exists()
        assert path.parent == store.state_dir
        loaded = await store.load("discovery-a.test-0123456789abcdef", DiscoveryCheckpoint)
        assert loaded == state

    @pytest.mark.asyncio
    async def test_file_is_camel_case_json(self, store):
        """Test that the file on disk is the wire form."""
        state = BatchCheckpoint(urls_to_process=["https://a.test"], processed_url_count=3, total_urls=4)
        path = await store.save("batch-batch-abc", state)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["urlsToProcess"] == ["https://a.test"]
        assert data["processedUrlCount"] == 3

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, store):
        """Test that loading an unknown job yields None."""
        assert await store.load("batch-batch-missing", BatchCheckpoint) is None

    @pytest.mark.asyncio
    async def test_corrupt_file_is_discarded(self, store):
        """Test that unparseable checkpoints are removed and ignored."""
        path = store.path_for("batch-batch-bad")
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")

        assert await store.load("batch-batch-bad", BatchCheckpoint) is None
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_version_mismatch_is_discarded(self, store):
        """Test that a different major version is treated as unusable."""
        state = BatchCheckpoint(urls_to_process=["https://a.test"], total_urls=1)
        path = await store.save("batch-batch-old", state)
        data = json.loads(path.read_text(encoding="utf-8"))
        data["version"] = "2.0"
        path.write_text(json.dumps(data), encoding="utf-8")

        assert await store.load("batch-batch-old", BatchCheckpoint) is None
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_minor_version_is_accepted(self, store):
        """Test that only the major version has to match."""
        state = BatchCheckpoint(urls_to_process=["https://a.test"], total_urls=1)
        path = await store.save("batch-batch-minor", state)
        data = json.loads(path.read_text(encoding="utf-8"))
        data["version"] = "1.7"
        path.write_text(json.dumps(data), encoding="utf-8")

        loaded = await store.load("batch-batch-minor", BatchCheckpoint)
        assert loaded is not None
        assert loaded.urls_to_process == ["https://a.test"]

    @pytest.mark.asyncio
    async def test_invalid_shape_is_discarded(self, store):
        """Test that a checkpoint failing validation is discarded."""
        path = store.path_for("discovery-a.test-x")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"version": "1.0", "maxDepth": -1}), encoding="utf-8")

        assert await store.load("discovery-a.test-x", DiscoveryCheckpoint) is None
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Test that delete removes the file once."""
        await store.save("batch-batch-done", BatchCheckpoint())
        assert store.delete("batch-batch-done") is True
        assert store.delete("batch-batch-done") is False

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, store):
        """Test that repeated saves replace the file atomically."""
        for count in range(3):
            await store.save("batch-batch-x", BatchCheckpoint(processed_url_count=count))
        files = sorted(p.name for p in store.state_dir.iterdir())
        assert files == [store.path_for("batch-batch-x").name]

    def test_path_is_slugified(self, store):
        """Test that job ids map to safe file names."""
        assert store.path_for("discovery-docs.a.test-abc").name == "discovery-docs-a-test-abc.json"
