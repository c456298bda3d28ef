"""Tier-based usage counting.

``UsageCounter`` answers "may this user consume one more unit of this
resource?" and, when the answer is yes, records the consumption. Period
rollover is lazy: whichever read or consume first observes a new bucket resets
the count, so no background job is needed.

Quota exhaustion, unknown users and store failures are all returned as denied
decisions rather than raised. Lookups fail closed: a caller that cannot be
verified is treated as a Standard user already at the limit.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from aether_usage.periods import Period, resolve_period
from aether_usage.store import StoreError, UsageRecord, UsageStore, UserAccount
from aether_usage.tiers import (
    ResourceKind,
    Tier,
    TierPolicy,
    lookup_tier,
    next_tier,
)

_logger = logging.getLogger("aether")

DENIED_LIMIT = "period_limit_reached"
DENIED_UNKNOWN_USER = "user_not_found"
DENIED_UNAVAILABLE = "usage_unavailable"

# Query types where the premium model is worth spending quota on
PREMIUM_QUERY_TYPES = frozenset(
    {
        "creative_superproxy",
        "first_message_welcome",
        "profile_analysis",
        "complex_reasoning",
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UsageSnapshot:
    """A user's standing for one resource kind in the current period."""

    tier: Tier
    kind: ResourceKind
    limit: Optional[int]
    used: int
    remaining: Optional[int]
    total: int
    period_start: str
    period_end: str

    @property
    def is_unlimited(self) -> bool:
        return self.limit is None

    @property
    def can_consume(self) -> bool:
        return self.is_unlimited or (self.remaining or 0) > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["kind"] = self.kind.value
        data["is_unlimited"] = self.is_unlimited
        data["can_consume"] = self.can_consume
        return data


@dataclass
class UsageDecision:
    """Result of a consumption attempt."""

    allowed: bool
    usage: UsageSnapshot
    reason: Optional[str] = None
    message: str = ""


@dataclass
class ModelSelection:
    """Which model a request should use and why."""

    model: str
    reason: str
    message: str
    usage: Optional[UsageSnapshot] = None


class UsageCounter:
    """Per-user, per-resource usage counter backed by a UsageStore."""

    def __init__(
        self,
        store: UsageStore,
        policy: TierPolicy,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock

    def _period(self, kind: ResourceKind, now: datetime) -> Period:
        resource = self.policy.resource(kind)
        return resolve_period(
            resource.strategy, now, resource.period_length_days, resource.epoch
        )

    def _snapshot(
        self, tier: Tier, kind: ResourceKind, record: UsageRecord, period: Period
    ) -> UsageSnapshot:
        limit = self.policy.limit_for(tier, kind)
        remaining = None if limit is None else max(0, limit - record.period_count)
        return UsageSnapshot(
            tier=tier,
            kind=kind,
            limit=limit,
            used=record.period_count,
            remaining=remaining,
            total=record.total_count,
            period_start=period.start,
            period_end=period.end,
        )

    def _fail_closed(self, kind: ResourceKind, period: Period) -> UsageSnapshot:
        limit = self.policy.limit_for(Tier.STANDARD, kind)
        used = limit if limit is not None else 0
        return UsageSnapshot(
            tier=Tier.STANDARD,
            kind=kind,
            limit=limit,
            used=used,
            remaining=0,
            total=0,
            period_start=period.start,
            period_end=period.end,
        )

    async def get_usage_info(self, user_id: str, kind: ResourceKind) -> UsageSnapshot:
        """Return the user's usage for ``kind``, rolling the period over if stale."""
        now = self.clock()
        period = self._period(kind, now)

        try:
            account = await self.store.get_user(user_id)
            record = None
            if account is not None:
                record = await self.store.rollover(user_id, kind, period.key, now)
        except StoreError as exc:
            _logger.error("Usage lookup failed for %s/%s: %s", user_id, kind.value, exc.detail)
            return self._fail_closed(kind, period)

        if account is None or record is None:
            _logger.warning("Usage lookup for unknown user %s", user_id)
            return self._fail_closed(kind, period)

        return self._snapshot(account.tier, kind, record, period)

    async def try_consume(self, user_id: str, kind: ResourceKind) -> UsageDecision:
        """Consume one unit of ``kind`` if the user's limit allows it.

        The limit check and the increment are a single store operation, so
        concurrent calls for the same user can never overshoot the limit.
        """
        now = self.clock()
        period = self._period(kind, now)

        try:
            account = await self.store.get_user(user_id)
            result = None
            if account is not None:
                limit = self.policy.limit_for(account.tier, kind)
                result = await self.store.try_increment(user_id, kind, period.key, limit, now)
        except StoreError as exc:
            _logger.error("Usage consume failed for %s/%s: %s", user_id, kind.value, exc.detail)
            return UsageDecision(
                allowed=False,
                usage=self._fail_closed(kind, period),
                reason=DENIED_UNAVAILABLE,
                message="Usage tracking is temporarily unavailable.",
            )

        if account is None or result is None:
            _logger.warning("Consume attempted for unknown user %s", user_id)
            return UsageDecision(
                allowed=False,
                usage=self._fail_closed(kind, period),
                reason=DENIED_UNKNOWN_USER,
                message="User not found.",
            )

        snapshot = self._snapshot(account.tier, kind, result.record, period)
        if not result.applied:
            return UsageDecision(
                allowed=False,
                usage=snapshot,
                reason=DENIED_LIMIT,
                message=self._limit_message(snapshot),
            )

        return UsageDecision(allowed=True, usage=snapshot, message="Usage recorded.")

    async def check_and_consume(
        self, user_id: str, kind: Union[str, ResourceKind]
    ) -> UsageDecision:
        """Boundary entry point accepting a raw resource kind name."""
        return await self.try_consume(user_id, ResourceKind(kind))

    def _limit_message(self, snapshot: UsageSnapshot) -> str:
        upgrade = next_tier(snapshot.tier)
        base = "{} limit of {} reached for the period ending {}.".format(
            snapshot.kind.value, snapshot.limit, snapshot.period_end
        )
        if upgrade is None:
            return base
        upgrade_limit = self.policy.limit_for(upgrade, snapshot.kind)
        return "{} Upgrade to {} ({}) for more.".format(
            base,
            upgrade.value,
            "unlimited" if upgrade_limit is None else "{} per period".format(upgrade_limit),
        )

    async def select_model(
        self,
        user_id: str,
        query_type: str = "conversational",
        default_model: str = "openai/gpt-4o-mini",
        premium_model: str = "openai/gpt-5",
        force_default: bool = False,
    ) -> ModelSelection:
        """Pick the model for a request, spending premium quota where it pays off.

        Never fails: any denial falls back to the default model.
        """
        if force_default:
            return ModelSelection(
                model=default_model,
                reason="forced_default",
                message="Default model requested.",
            )

        if query_type not in PREMIUM_QUERY_TYPES:
            return ModelSelection(
                model=default_model,
                reason="default_fast",
                message="Using the default model for a fast response.",
            )

        decision = await self.try_consume(user_id, ResourceKind.PREMIUM_MODEL)
        if decision.allowed:
            return ModelSelection(
                model=premium_model,
                reason="premium_{}".format(query_type),
                message="Using the premium model for {}.".format(query_type.replace("_", " ")),
                usage=decision.usage,
            )

        return ModelSelection(
            model=default_model,
            reason="premium_{}".format(decision.reason),
            message=decision.message,
            usage=decision.usage,
        )

    async def upgrade_tier(
        self, user_id: str, tier: Union[str, Tier]
    ) -> Optional[UserAccount]:
        """Change a user's tier (admin operation). Returns None for unknown users.

        Raises:
            ValueError: If ``tier`` is not a recognized tier name.
        """
        new_tier = lookup_tier(tier)
        if new_tier is None:
            raise ValueError("Invalid tier: {!r}".format(tier))
        account = await self.store.set_tier(user_id, new_tier)
        if account is not None:
            _logger.info("User %s moved to tier %s", user_id, new_tier.value)
        return account
