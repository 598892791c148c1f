"""Lifecycle classification of discovered tokens."""
import time
from typing import Optional

from ledger_mirror.models import DiscoveredToken, TokenCategory


class TokenClassifier:
    """Assigns a TokenCategory from liquidity, DEX, age and activity signals."""

    def __init__(self, config: dict):
        """Initialize with configuration."""
        thresholds = config.get("classification", {})

        self.high_activity = thresholds.get("high_activity", 10)
        self.young_age_minutes = thresholds.get("young_age_minutes", 30)
        self.mature_activity = thresholds.get("mature_activity", 5)

    def classify(
        self,
        has_liquidity_pool: bool,
        has_dex_interaction: bool,
        age_minutes: float,
        recent_activity: int,
    ) -> TokenCategory:
        """Evaluate the rules top-down; the first match wins."""
        # 1. Liquidity pool seen: the token has left the bonding phase
        if has_liquidity_pool:
            return TokenCategory.MIGRATED

        # 2. Any DEX routing
        if has_dex_interaction:
            return TokenCategory.FINAL_STRETCH

        # 3. Busy regardless of age
        if recent_activity >= self.high_activity:
            return TokenCategory.FINAL_STRETCH

        # 4. Young tokens stay new
        if age_minutes <= self.young_age_minutes:
            return TokenCategory.NEW_PAIRS

        # 5. Older and still moderately active
        if recent_activity >= self.mature_activity:
            return TokenCategory.FINAL_STRETCH

        return TokenCategory.NEW_PAIRS

    def classify_token(self, token: DiscoveredToken, now: Optional[float] = None) -> TokenCategory:
        now = time.time() if now is None else now
        age_minutes = (now - token.detected_at) / 60
        return self.classify(
            token.has_liquidity_pool,
            token.has_dex_interaction,
            age_minutes,
            token.recent_activity or 0,
        )
