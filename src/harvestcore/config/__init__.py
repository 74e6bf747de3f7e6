"""Configuration models for harvestcore."""

from .config import (
    CheckpointConfig,
    Config,
    CrawlerConfig,
    MonitoringConfig,
    ProxyConfig,
    RateLimitConfig,
    UrlFilteringConfig,
    UserAgentConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "CheckpointConfig",
    "Config",
    "CrawlerConfig",
    "MonitoringConfig",
    "ProxyConfig",
    "RateLimitConfig",
    "UrlFilteringConfig",
    "UserAgentConfig",
    "find_config_file",
    "load_config",
]
