"""
Work frontiers for the two job modes.

``GraphFrontier`` is the breadth-first discovery queue with dedup and a depth
bound. ``ListFrontier`` is the flat remaining-URL list of a batch job. Both
are owned by exactly one engine instance.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Iterable, List, Optional, Set

from harvestcore.state import CrawlItem

UrlPredicate = Callable[[str], bool]


class GraphFrontier:
    """
    FIFO crawl queue with discovered / visited / failed bookkeeping.

    A URL enters ``discovered`` at most once, is queued at most once, and is
    never queued while also in ``visited``. Items handed out by
    ``take_batch`` stay in ``in_flight`` until marked visited or failed, so a
    snapshot taken mid-batch still contains them.
    """

    def __init__(self, max_depth: int, predicate: Optional[UrlPredicate] = None):
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        self.max_depth = max_depth
        self.predicate = predicate
        self.queue: Deque[CrawlItem] = deque()
        self.discovered: Set[str] = set()
        self.visited: Set[str] = set()
        self.failed: Set[str] = set()
        self.in_flight: List[CrawlItem] = []
        # Insertion order of discovered URLs, for output
        self._discovered_order: List[str] = []

    def seed(self, url: str) -> bool:
        if url in self.discovered:
            return False
        self._discover(url)
        self.queue.append(CrawlItem(url=url, depth=0))
        return True

    def _discover(self, url: str) -> None:
        self.discovered.add(url)
        self._discovered_order.append(url)

    def offer(self, url: str, parent: CrawlItem) -> bool:
        """Enqueue a child of ``parent`` if it is new, within depth, and passes the filter."""
        if url in self.discovered:
            return False
        if parent.depth >= self.max_depth:
            return False
        if self.predicate is not None and not self.predicate(url):
            return False

        self._discover(url)
        self.queue.append(parent.child(url))
        return True

    def has_next(self) -> bool:
        return bool(self.queue)

    def take_batch(self, size: int) -> List[CrawlItem]:
        batch: List[CrawlItem] = []
        while self.queue and len(batch) < size:
            item = self.queue.popleft()
            if item.url in self.visited:
                continue
            batch.append(item)
        self.in_flight.extend(batch)
        return batch

    def _complete(self, item: CrawlItem) -> None:
        try:
            self.in_flight.remove(item)
        except ValueError:
            pass

    def mark_visited(self, item: CrawlItem) -> None:
        self._complete(item)
        self.visited.add(item.url)

    def mark_failed(self, item: CrawlItem) -> None:
        self._complete(item)
        self.failed.add(item.url)

    def snapshot_queue(self) -> List[CrawlItem]:
        """In-flight items first, then pending ones."""
        return list(self.in_flight) + list(self.queue)

    def discovered_urls(self) -> List[str]:
        return list(self._discovered_order)

    def restore(
        self,
        discovered: Iterable[str],
        visited: Iterable[str],
        failed: Iterable[str],
        queue: Iterable[CrawlItem],
    ) -> None:
        self.discovered.clear()
        self._discovered_order.clear()
        for url in discovered:
            if url not in self.discovered:
                self._discover(url)
        self.visited = set(visited)
        self.failed = set(failed)
        self.in_flight.clear()

        self.queue.clear()
        queued: Set[str] = set()
        for item in queue:
            if item.url in self.visited or item.url in queued or item.depth > self.max_depth:
                continue
            queued.add(item.url)
            if item.url not in self.discovered:
                self._discover(item.url)
            self.queue.append(item)

    def __len__(self) -> int:
        return len(self.queue)


class ListFrontier:
    """
    Ordered list of URLs still to process in a batch job.

    Items are removed only once they complete, so the list that gets
    checkpointed always includes work that was dispatched but not finished.
    """

    def __init__(self, urls: Iterable[str]):
        self.remaining: List[str] = []
        seen: Set[str] = set()
        for url in urls:
            if url not in seen:
                seen.add(url)
                self.remaining.append(url)
        self._cursor = 0

    def has_next(self) -> bool:
        return self._cursor < len(self.remaining)

    def next(self) -> Optional[str]:
        """Next undispatched URL in FIFO order."""
        if not self.has_next():
            return None
        url = self.remaining[self._cursor]
        self._cursor += 1
        return url

    def complete(self, url: str) -> None:
        try:
            index = self.remaining.index(url)
        except ValueError:
            return
        del self.remaining[index]
        if index < self._cursor:
            self._cursor -= 1

    def snapshot(self) -> List[str]:
        return list(self.remaining)

    def __len__(self) -> int:
        return len(self.remaining)
