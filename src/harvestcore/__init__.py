"""
harvestcore - polite, resumable web crawling and bulk content harvesting.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .engines import DiscoveryResult, ScrapingResult
from .service import DiscoveryOptions, HarvestService, ScrapeOptions

__all__ = [
    "__version__",
    "Config",
    "DiscoveryOptions",
    "DiscoveryResult",
    "HarvestService",
    "ScrapeOptions",
    "ScrapingResult",
]
