"""Persistence for user accounts, usage counters, cooldowns and insights.

All mutation of usage and cooldown state goes through a ``UsageStore``. The
store owns the one operation that must be atomic: rolling the period over and
incrementing the counter only while it is still below the limit. Callers never
read a record, decide, and write it back in two steps.

``InMemoryStore`` is correct within a single process. ``RedisStore`` (in
``aether_usage.redis_store``) gives the same guarantees across processes.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from aether_usage.tiers import ResourceKind, Tier

# Insights older than this are pruned on the next write for the same user
INSIGHT_TTL = timedelta(days=7)


class StoreError(Exception):
    """Raised when the backing store cannot be read or written."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


@dataclass
class UserAccount:
    """The slice of a user document this service owns."""

    user_id: str
    tier: Tier
    created_at: datetime


@dataclass
class UsageRecord:
    """Per-user, per-resource usage counter."""

    period_key: str = ""
    period_count: int = 0
    total_count: int = 0
    last_reset: Optional[datetime] = None


@dataclass
class IncrementResult:
    """Outcome of an atomic compare-and-increment."""

    applied: bool
    record: UsageRecord


@dataclass
class CooldownRecord:
    """Last insight generation for one (user, category)."""

    user_id: str
    category: str
    last_generated_at: datetime
    data_fingerprint: str
    cooldown_seconds: int
    attempt_count: int = 1

    @property
    def cooldown_until(self) -> float:
        return self.last_generated_at.timestamp() + self.cooldown_seconds

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, self.cooldown_until - now.timestamp())

    def is_active(self, now: datetime) -> bool:
        return self.remaining_seconds(now) > 0


@dataclass
class InsightRecord:
    """A generated insight kept for history."""

    user_id: str
    category: str
    text: str
    confidence: float
    fingerprint: str
    generated_at: datetime
    data_points: int = 0
    model: str = ""
    processing_ms: int = 0


class UsageStore:
    """Interface every storage backend implements."""

    async def create_user(self, user_id: str, tier: Tier, now: datetime) -> UserAccount:
        """Create a user with zeroed usage; an existing user is returned unchanged."""
        raise NotImplementedError

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        raise NotImplementedError

    async def set_tier(self, user_id: str, tier: Tier) -> Optional[UserAccount]:
        raise NotImplementedError

    async def rollover(
        self, user_id: str, kind: ResourceKind, period_key: str, now: datetime
    ) -> Optional[UsageRecord]:
        """Reset the counter if ``period_key`` is newer, then return the record.

        Returns None if the user does not exist.
        """
        raise NotImplementedError

    async def try_increment(
        self,
        user_id: str,
        kind: ResourceKind,
        period_key: str,
        limit: Optional[int],
        now: datetime,
    ) -> Optional[IncrementResult]:
        """Atomically roll over and increment while below ``limit``.

        A ``limit`` of None means unlimited. Returns None if the user does not
        exist.
        """
        raise NotImplementedError

    async def get_cooldown(self, user_id: str, category: str) -> Optional[CooldownRecord]:
        raise NotImplementedError

    async def list_cooldowns(self, user_id: str) -> List[CooldownRecord]:
        raise NotImplementedError

    async def put_cooldown(
        self,
        user_id: str,
        category: str,
        fingerprint: str,
        generated_at: datetime,
        cooldown_seconds: int,
    ) -> CooldownRecord:
        """Upsert the cooldown record, replacing prior state."""
        raise NotImplementedError

    async def add_insight(self, record: InsightRecord) -> None:
        """Store ``record`` as the current insight for its category.

        Replaces the previous insight for the same category and drops the
        user's insights older than ``INSIGHT_TTL`` relative to ``record``.
        """
        raise NotImplementedError

    async def latest_insights(self, user_id: str, limit: int = 10) -> List[InsightRecord]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _rolled(record: UsageRecord, period_key: str, now: datetime) -> UsageRecord:
    """Reset the period count when ``period_key`` is newer than the stored key.

    Keys sort chronologically as strings. An older key (a caller with a lagging
    clock) is counted against the stored, newer period.
    """
    if record.period_key and period_key <= record.period_key:
        return record
    return UsageRecord(
        period_key=period_key,
        period_count=0,
        total_count=record.total_count,
        last_reset=now,
    )


@dataclass
class InMemoryStore(UsageStore):
    """Process-local store.

    A single asyncio lock serializes mutations, and nothing awaits between the
    limit check and the write.
    """

    _users: Dict[str, UserAccount] = field(default_factory=dict)
    _usage: Dict[Tuple[str, ResourceKind], UsageRecord] = field(default_factory=dict)
    _cooldowns: Dict[Tuple[str, str], CooldownRecord] = field(default_factory=dict)
    _insights: Dict[str, List[InsightRecord]] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def create_user(self, user_id: str, tier: Tier, now: datetime) -> UserAccount:
        async with self._lock:
            account = self._users.get(user_id)
            if account is None:
                account = UserAccount(user_id=user_id, tier=tier, created_at=now)
                self._users[user_id] = account
                for kind in ResourceKind:
                    self._usage[(user_id, kind)] = UsageRecord()
            return replace(account)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        account = self._users.get(user_id)
        return replace(account) if account else None

    async def set_tier(self, user_id: str, tier: Tier) -> Optional[UserAccount]:
        async with self._lock:
            account = self._users.get(user_id)
            if account is None:
                return None
            account.tier = tier
            return replace(account)

    async def rollover(
        self, user_id: str, kind: ResourceKind, period_key: str, now: datetime
    ) -> Optional[UsageRecord]:
        async with self._lock:
            if user_id not in self._users:
                return None
            record = _rolled(self._usage.get((user_id, kind), UsageRecord()), period_key, now)
            self._usage[(user_id, kind)] = record
            return replace(record)

    async def try_increment(
        self,
        user_id: str,
        kind: ResourceKind,
        period_key: str,
        limit: Optional[int],
        now: datetime,
    ) -> Optional[IncrementResult]:
        async with self._lock:
            if user_id not in self._users:
                return None
            record = _rolled(self._usage.get((user_id, kind), UsageRecord()), period_key, now)

            applied = limit is None or record.period_count < limit
            if applied:
                record = replace(
                    record,
                    period_count=record.period_count + 1,
                    total_count=record.total_count + 1,
                )

            self._usage[(user_id, kind)] = record
            return IncrementResult(applied=applied, record=replace(record))

    async def get_cooldown(self, user_id: str, category: str) -> Optional[CooldownRecord]:
        record = self._cooldowns.get((user_id, category))
        return replace(record) if record else None

    async def list_cooldowns(self, user_id: str) -> List[CooldownRecord]:
        return [
            replace(record)
            for (owner, _), record in sorted(self._cooldowns.items())
            if owner == user_id
        ]

    async def put_cooldown(
        self,
        user_id: str,
        category: str,
        fingerprint: str,
        generated_at: datetime,
        cooldown_seconds: int,
    ) -> CooldownRecord:
        async with self._lock:
            previous = self._cooldowns.get((user_id, category))
            record = CooldownRecord(
                user_id=user_id,
                category=category,
                last_generated_at=generated_at,
                data_fingerprint=fingerprint,
                cooldown_seconds=cooldown_seconds,
                attempt_count=previous.attempt_count + 1 if previous else 1,
            )
            self._cooldowns[(user_id, category)] = record
            return replace(record)

    async def add_insight(self, record: InsightRecord) -> None:
        cutoff = record.generated_at - INSIGHT_TTL
        async with self._lock:
            kept = [
                r
                for r in self._insights.get(record.user_id, [])
                if r.category != record.category and r.generated_at >= cutoff
            ]
            kept.append(replace(record))
            self._insights[record.user_id] = kept

    async def latest_insights(self, user_id: str, limit: int = 10) -> List[InsightRecord]:
        if limit <= 0:
            return []
        records = sorted(
            self._insights.get(user_id, []),
            key=lambda r: r.generated_at,
            reverse=True,
        )
        return [replace(r) for r in records[:limit]]
