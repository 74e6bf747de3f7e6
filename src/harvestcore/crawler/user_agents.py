"""
User-Agent rotation built from configured browser and platform pools.
"""

from __future__ import annotations

import random
from typing import Dict, List, Optional

from harvestcore.config.config import UserAgentConfig

FALLBACK_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

# Product token per browser family, rendered after the platform section
_BROWSER_TOKENS: Dict[str, str] = {
    "chrome": "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "firefox": "Gecko/20100101 Firefox/121.0",
    "safari": "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "edge": "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
}


class UserAgentRotator:
    """
    Produces a User-Agent for each request.

    Every browser/platform combination is pre-rendered once; ``get_random_user_agent``
    then picks uniformly from that pool.
    """

    def __init__(self, config: Optional[UserAgentConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or UserAgentConfig()
        self._random = rng or random.Random()
        self.agents: List[str] = [
            self._render(browser, platform) for browser in self.config.browsers for platform in self.config.platforms
        ]

    @staticmethod
    def _render(browser: str, platform: str) -> str:
        token = _BROWSER_TOKENS.get(browser.lower())
        if token is None:
            token = f"AppleWebKit/537.36 (KHTML, like Gecko) {browser}/120.0.0.0 Safari/537.36"
        return f"Mozilla/5.0 ({platform}) {token}"

    def get_random_user_agent(self) -> str:
        if not self.agents:
            return FALLBACK_USER_AGENT
        return self._random.choice(self.agents)

    def get_stats(self) -> Dict[str, int]:
        return {
            "browsers": len(self.config.browsers),
            "platforms": len(self.config.platforms),
            "agents": len(self.agents),
        }
