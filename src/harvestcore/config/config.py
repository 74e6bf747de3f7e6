"""
Configuration management for harvestcore using Pydantic.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATTERNS = ["header", "footer", "nav", "menu"]
DEFAULT_INVALID_URL_PREFIXES = [
    "javascript:",
    "#",
    "mailto:",
    "data:",
    "tel:",
    "blob:",
    "chrome-extension:",
    "about:",
]
DEFAULT_EXTENSIONS_TO_AVOID = [
    ".css",
    ".jpeg",
    ".jpg",
    ".png",
    ".js",
    ".gif",
    ".svg",
    ".xml",
    ".json",
    ".mp3",
    ".mp4",
    ".zip",
    ".rar",
    ".tar",
    ".gz",
    ".mov",
    ".its",
]

# --- Nested Configuration Models ---


class UserAgentConfig(BaseModel):
    """Browser and platform pools used to build rotating User-Agent strings."""

    browsers: List[str] = Field(default_factory=lambda: ["Chrome", "Firefox", "Safari", "Edge"])
    platforms: List[str] = Field(
        default_factory=lambda: [
            "Windows NT 10.0; Win64; x64",
            "Macintosh; Intel Mac OS X 10_15_7",
            "X11; Linux x86_64",
            "iPhone; CPU iPhone OS 14_4 like Mac OS X",
            "Linux; Android 11; Mobile",
        ]
    )


class CrawlerConfig(BaseModel):
    """Crawler configuration."""

    max_concurrent_pages: int = Field(
        default=7, gt=0, description="Concurrent pages for jobs that do not set their own limit."
    )
    max_depth: int = Field(default=100, gt=0, description="Hard ceiling on discovery depth.")
    navigation_timeout: float = Field(default=60.0, gt=0, description="Per-page fetch timeout in seconds.")
    output_base_path: Path = Field(
        default_factory=lambda: Path.cwd() / "harvest_output",
        description="Root directory for discovery output and checkpoints.",
    )
    user_agent_rotation: bool = Field(default=True, description="Rotate User-Agent strings per request.")
    user_agent: UserAgentConfig = Field(default_factory=UserAgentConfig)
    default_user_agent: str = Field(
        default="harvestcore/0.1 (+https://github.com/harvestcore/harvestcore)",
        description="User-Agent used when rotation is disabled.",
    )

    @field_validator("output_base_path", mode="before")
    @classmethod
    def validate_output_path(cls, v: str | Path) -> Path:
        if isinstance(v, str) and not v.strip():
            raise ValueError("output_base_path cannot be empty or whitespace")
        return Path(v)


class UrlFilteringConfig(BaseModel):
    """Lists that drive the URL filter predicate."""

    exclude_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS),
        description="Regular expressions matched case-insensitively against the full URL.",
    )
    invalid_url_prefixes: List[str] = Field(default_factory=lambda: list(DEFAULT_INVALID_URL_PREFIXES))
    extensions_to_avoid: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS_TO_AVOID))

    @field_validator("exclude_patterns")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid exclude pattern {pattern!r}: {e}") from e
        return v


class RateLimitConfig(BaseModel):
    """Per-host and per-IP request budgets. All durations are milliseconds."""

    enabled: bool = True
    max_requests_per_minute_per_host: int = Field(default=15, gt=0)
    max_requests_per_minute_per_ip: Optional[int] = Field(
        default=None, gt=0, description="Per-proxy-IP budget. None disables per-IP limiting and IP backoff."
    )
    min_delay_ms_per_host: int = Field(default=2000, ge=0)
    max_random_delay_ms_per_host: int = Field(default=3000, ge=0)
    host_backoff_ms_on_error: int = Field(default=300_000, ge=0)
    ip_backoff_ms_on_error: int = Field(default=600_000, ge=0)


class ProxyConfig(BaseModel):
    """Static proxy pool."""

    static_proxies: List[str] = Field(default_factory=list, description="Proxy URLs, e.g. http://user:pw@1.2.3.4:8080")
    assignment_strategy: Literal["sticky_by_host", "sequential_cycle"] = "sticky_by_host"

    @field_validator("static_proxies")
    @classmethod
    def validate_proxies(cls, v: List[str]) -> List[str]:
        for proxy in v:
            if "://" not in proxy:
                raise ValueError(f"Proxy URL must include a scheme: {proxy!r}")
        return v


class CheckpointConfig(BaseModel):
    """Crash-safe progress saving."""

    enabled: bool = True
    state_dir: Optional[Path] = Field(
        default=None, description="Checkpoint directory. Defaults to <output_base_path>/scraper_states."
    )
    auto_save_interval: int = Field(
        default=100, ge=0, description="Save after this many items processed in the current run. 0 disables."
    )
    delete_on_completion: bool = Field(default=True, description="Remove the checkpoint once a job completes.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to a JSON log file. If None, logs to console.")
    json_logs: bool = Field(default=False, description="Render console logs as JSON.")
    metrics_enabled: bool = True
    prometheus_port: int | None = Field(default=None, description="Port for the Prometheus exporter. None to disable.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Config(BaseSettings):
    project_name: str = "harvestcore"
    version: str = "0.1.0"
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    url_filtering: UrlFilteringConfig = Field(default_factory=UrlFilteringConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="HARVEST_", env_nested_delimiter="__", case_sensitive=False)

    @property
    def state_dir(self) -> Path:
        """Directory that holds checkpoint files."""
        if self.checkpoint.state_dir is not None:
            return Path(self.checkpoint.state_dir)
        return self.crawler.output_base_path / "scraper_states"

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("harvest.yaml", "harvest.yml", "config.yaml", "config.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


def load_config(path: Path | None = None) -> Config:
    """Load configuration from ``path``, a discovered config file, or the environment."""
    config_path = path or find_config_file()
    if config_path is not None:
        log.info("Loading configuration from: %s", config_path)
        return Config.from_yaml(Path(config_path))
    return Config()
