"""Insight regeneration cooldowns.

A new insight for a (user, category) pair is allowed when any of these holds:

- nothing has been generated for the pair yet,
- the data fingerprint differs from the one stored at the last generation,
- the cooldown window since the last generation has elapsed,
- the caller forces generation.

Fingerprints are computed from coarse features of the user's behavioral data
so that one extra message does not invalidate a cooldown.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from aether_usage.config import CooldownConfig
from aether_usage.store import CooldownRecord, UsageStore
from aether_usage.usage import utcnow


class InsightCategory(str, Enum):
    """Categories an insight can be generated for."""

    COMMUNICATION = "communication"
    PERSONALITY = "personality"
    BEHAVIORAL = "behavioral"
    EMOTIONAL = "emotional"
    GROWTH = "growth"


FINGERPRINT_LENGTH = 16
MESSAGE_BUCKET = 10


def compute_fingerprint(category: InsightCategory, data: Mapping[str, Any]) -> str:
    """Digest the features of ``data`` that should trigger a fresh insight.

    Message counts are rounded to the nearest ten; pattern counts and the
    communication style are taken as-is.
    """
    total = int(data.get("total_messages", 0) or 0)
    patterns = data.get("patterns") or {}

    features = {
        "category": category.value,
        "messages": (total + MESSAGE_BUCKET // 2) // MESSAGE_BUCKET * MESSAGE_BUCKET,
        "patterns": {str(k): int(v) for k, v in sorted(patterns.items())},
        "style": data.get("communication_style") or "",
    }
    canonical = json.dumps(features, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def format_remaining(seconds: float) -> str:
    """Render a remaining cooldown as ``"2h 5m"``, ``"12m"`` or ``"Ready"``."""
    if seconds <= 0:
        return "Ready"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 0:
        return "{}h {}m".format(hours, minutes)
    return "{}m".format(minutes)


@dataclass
class CooldownCheck:
    """Whether an insight may be generated now."""

    allowed: bool
    reason: str
    remaining_seconds: float = 0.0


class CooldownTracker:
    """Per-user, per-category cooldown gate backed by a UsageStore."""

    def __init__(
        self,
        store: UsageStore,
        config: Optional[CooldownConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or CooldownConfig()
        self.clock = clock

    def cooldown_seconds(self, category: InsightCategory) -> int:
        return self.config.seconds_for(category.value)

    async def can_generate(
        self,
        user_id: str,
        category: InsightCategory,
        fingerprint: str,
        force: bool = False,
    ) -> CooldownCheck:
        """Check the cooldown for (user, category) against ``fingerprint``.

        Raises:
            StoreError: If the cooldown state cannot be read.
        """
        if force:
            return CooldownCheck(allowed=True, reason="forced")

        record = await self.store.get_cooldown(user_id, category.value)
        if record is None:
            return CooldownCheck(allowed=True, reason="first_generation")

        if record.data_fingerprint != fingerprint:
            return CooldownCheck(allowed=True, reason="data_changed")

        remaining = record.remaining_seconds(self.clock())
        if remaining <= 0:
            return CooldownCheck(allowed=True, reason="cooldown_expired")

        return CooldownCheck(
            allowed=False, reason="cooldown_active", remaining_seconds=remaining
        )

    async def record_generation(
        self,
        user_id: str,
        category: InsightCategory,
        fingerprint: str,
        timestamp: Optional[datetime] = None,
    ) -> CooldownRecord:
        """Start a new cooldown window for (user, category)."""
        return await self.store.put_cooldown(
            user_id,
            category.value,
            fingerprint,
            timestamp or self.clock(),
            self.cooldown_seconds(category),
        )

    async def cooldown_status(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Summarize every category for a user, including never-generated ones."""
        now = self.clock()
        records: List[CooldownRecord] = await self.store.list_cooldowns(user_id)
        by_category = {r.category: r for r in records}

        status: Dict[str, Dict[str, Any]] = {}
        for category in InsightCategory:
            record = by_category.get(category.value)
            if record is None:
                status[category.value] = {
                    "is_active": False,
                    "remaining_seconds": 0,
                    "remaining_formatted": "Ready",
                    "last_generated_at": None,
                    "attempt_count": 0,
                }
                continue

            remaining = record.remaining_seconds(now)
            status[category.value] = {
                "is_active": remaining > 0,
                "remaining_seconds": int(remaining),
                "remaining_formatted": format_remaining(remaining),
                "last_generated_at": record.last_generated_at.isoformat(),
                "attempt_count": record.attempt_count,
            }
        return status
