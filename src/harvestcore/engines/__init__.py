"""Discovery and batch crawl engines."""

from .base import CrawlEngine, EngineState, JobStatus
from .batch import BatchEngine, ContentSummary, ScrapingResult, prepare_url_list, read_url_file
from .discovery import DiscoveryEngine, DiscoveryResult

__all__ = [
    "BatchEngine",
    "ContentSummary",
    "CrawlEngine",
    "DiscoveryEngine",
    "DiscoveryResult",
    "EngineState",
    "JobStatus",
    "ScrapingResult",
    "prepare_url_list",
    "read_url_file",
]
