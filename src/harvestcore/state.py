"""
Checkpoint wire models.

Checkpoints are JSON documents with camelCase keys. Python code uses the
snake_case attribute names; aliases take care of the wire format, so always
dump with ``by_alias=True``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CHECKPOINT_VERSION = "1.0"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CrawlItem(WireModel):
    """A URL waiting in the discovery frontier, with its distance from the seed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    url: str
    depth: int = Field(ge=0)

    def child(self, url: str) -> "CrawlItem":
        return CrawlItem(url=url, depth=self.depth + 1)


class FailedRecord(WireModel):
    url: str
    error: str
    failed_at: str = Field(default_factory=utc_now_iso)
    retry_count: int = Field(default=0, ge=0)


class WindowState(WireModel):
    timestamps: List[float] = Field(default_factory=list)
    last_request_time: float = 0
    backoff_until: float = 0


class RateLimiterState(WireModel):
    host_request_log: List[Tuple[str, WindowState]] = Field(default_factory=list)
    ip_request_log: List[Tuple[str, WindowState]] = Field(default_factory=list)


class ProxyAssignorState(WireModel):
    host_to_ip_map: List[Tuple[str, str]] = Field(default_factory=list)
    current_ip_index: int = Field(default=0, ge=0)


class CheckpointState(WireModel):
    """Fields shared by every checkpoint."""

    version: str = CHECKPOINT_VERSION
    timestamp: str = Field(default_factory=utc_now_iso)
    original_args: Dict[str, Any] = Field(default_factory=dict)
    failed_url_details: List[FailedRecord] = Field(default_factory=list)
    rate_limiter_state: Optional[RateLimiterState] = None
    static_proxy_manager_state: Optional[ProxyAssignorState] = None


class DiscoveryCheckpoint(CheckpointState):
    start_url: str
    max_depth: int = Field(ge=0)
    discovered_urls: List[str] = Field(default_factory=list)
    visited_urls: List[str] = Field(default_factory=list)
    crawl_queue: List[CrawlItem] = Field(default_factory=list)
    failed_urls: List[str] = Field(default_factory=list)


class BatchCheckpoint(CheckpointState):
    urls_to_process: List[str] = Field(default_factory=list)
    processed_url_count: int = Field(default=0, ge=0)
    total_urls: int = Field(default=0, ge=0)
