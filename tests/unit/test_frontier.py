"""
Unit tests for the discovery and batch frontiers.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from harvestcore.frontier import GraphFrontier, ListFrontier
from harvestcore.state import CrawlItem

SEED = "https://a.test"


class TestGraphFrontier:
    """Breadth-first discovery queue."""

    def test_seed_once(self):
        """Test that the seed is queued at depth 0 exactly once."""
        frontier = GraphFrontier(max_depth=2)
        assert frontier.seed(SEED)
        assert not frontier.seed(SEED)
        assert frontier.take_batch(5) == [CrawlItem(url=SEED, depth=0)]

    def test_offer_dedups(self):
        """Test that a URL is discovered at most once."""
        frontier = GraphFrontier(max_depth=2)
        frontier.seed(SEED)
        (root,) = frontier.take_batch(1)
        assert frontier.offer("https://a.test/x", root)
        assert not frontier.offer("https://a.test/x", root)
        assert not frontier.offer(SEED, root)
        assert frontier.discovered_urls() == [SEED, "https://a.test/x"]

    def test_depth_bound(self):
        """Test that children of max-depth items are not enqueued."""
        frontier = GraphFrontier(max_depth=1)
        frontier.seed(SEED)
        (root,) = frontier.take_batch(1)
        assert frontier.offer("https://a.test/x", root)
        (child,) = frontier.take_batch(1)
        assert child.depth == 1
        assert not frontier.offer("https://a.test/x/deeper", child)
        assert "https://a.test/x/deeper" not in frontier.discovered

    def test_max_depth_zero_only_seed(self):
        """Test that depth 0 crawls only the seed."""
        frontier = GraphFrontier(max_depth=0)
        frontier.seed(SEED)
        (root,) = frontier.take_batch(1)
        assert not frontier.offer("https://a.test/x", root)
        assert not frontier.has_next()

    def test_predicate_rejects(self):
        """Test that filtered URLs are neither queued nor discovered."""
        frontier = GraphFrontier(max_depth=3, predicate=lambda url: not url.endswith(".pdf"))
        frontier.seed(SEED)
        (root,) = frontier.take_batch(1)
        assert not frontier.offer("https://a.test/doc.pdf", root)
        assert "https://a.test/doc.pdf" not in frontier.discovered

    def test_in_flight_included_in_snapshot(self):
        """Test that dispatched-but-unfinished items survive a snapshot."""
        frontier = GraphFrontier(max_depth=2)
        frontier.seed(SEED)
        (root,) = frontier.take_batch(1)
        frontier.offer("https://a.test/x", root)
        frontier.offer("https://a.test/y", root)

        assert frontier.snapshot_queue()[0] == root
        frontier.mark_visited(root)
        assert frontier.snapshot_queue() == [
            CrawlItem(url="https://a.test/x", depth=1),
            CrawlItem(url="https://a.test/y", depth=1),
        ]

    def test_mark_failed(self):
        """Test that failed items leave the in-flight list."""
        frontier = GraphFrontier(max_depth=1)
        frontier.seed(SEED)
        (root,) = frontier.take_batch(1)
        frontier.mark_failed(root)
        assert frontier.failed == {SEED}
        assert frontier.in_flight == []

    def test_restore_skips_visited_duplicates_and_too_deep(self):
        """Test that restore rebuilds a consistent queue."""
        frontier = GraphFrontier(max_depth=1)
        frontier.restore(
            discovered=[SEED, "https://a.test/x"],
            visited=[SEED],
            failed=[],
            queue=[
                CrawlItem(url=SEED, depth=0),
                CrawlItem(url="https://a.test/x", depth=1),
                CrawlItem(url="https://a.test/x", depth=1),
                CrawlItem(url="https://a.test/too/deep", depth=2),
            ],
        )
        assert list(frontier.queue) == [CrawlItem(url="https://a.test/x", depth=1)]
        assert frontier.visited == {SEED}
        assert len(frontier) == 1

    def test_negative_depth_rejected(self):
        """Test constructor validation."""
        with pytest.raises(ValueError):
            GraphFrontier(max_depth=-1)

    @given(
        max_depth=st.integers(min_value=0, max_value=4),
        edges=st.lists(st.tuples(st.integers(0, 15), st.integers(0, 15)), max_size=60),
    )
    def test_depth_and_dedup_invariants(self, max_depth, edges):
        """Test depth bounds and uniqueness over random link graphs."""
        links = {}
        for src, dst in edges:
            links.setdefault(f"{SEED}/p{src}", []).append(f"{SEED}/p{dst}")

        frontier = GraphFrontier(max_depth=max_depth)
        frontier.seed(f"{SEED}/p0")
        dispatched = []
        while frontier.has_next():
            for item in frontier.take_batch(3):
                dispatched.append(item)
                for child in links.get(item.url, []):
                    if frontier.offer(child, item):
                        assert frontier.queue[-1].depth == item.depth + 1
                frontier.mark_visited(item)

        assert all(0 <= item.depth <= max_depth for item in dispatched)
        urls = [item.url for item in dispatched]
        assert len(urls) == len(set(urls))
        discovered = frontier.discovered_urls()
        assert len(discovered) == len(set(discovered))


class TestListFrontier:
    """Flat remaining-URL list."""

    def test_dedups_preserving_order(self):
        """Test input de-duplication."""
        frontier = ListFrontier(["u1", "u2", "u1", "u3"])
        assert frontier.snapshot() == ["u1", "u2", "u3"]

    def test_dispatch_does_not_remove(self):
        """Test that dispatched URLs stay until completed."""
        frontier = ListFrontier(["u1", "u2", "u3"])
        assert frontier.next() == "u1"
        assert frontier.next() == "u2"
        assert frontier.snapshot() == ["u1", "u2", "u3"]

        frontier.complete("u2")
        assert frontier.snapshot() == ["u1", "u3"]
        assert frontier.next() == "u3"
        assert frontier.next() is None

    def test_out_of_order_completion_keeps_cursor(self):
        """Test that completing an earlier item does not skip a later one."""
        frontier = ListFrontier(["u1", "u2", "u3", "u4"])
        frontier.next()
        frontier.next()
        frontier.complete("u1")
        assert frontier.next() == "u3"
        frontier.complete("unknown")
        assert len(frontier) == 3
