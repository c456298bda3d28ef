"""Tier policy table.

Maps each service tier to a usage limit for every rate-limited resource kind.
The table is immutable once loaded. It can be read from a YAML file::

    version: "1.0"
    resources:
      premium_model:
        period: calendar_month
        limits: {Standard: 10, Legend: 50, VIP: unlimited}
      responses:
        period: rolling
        period_length_days: 14
        epoch: "2024-01-01"
        limits: {Standard: 150, Legend: 3000, VIP: unlimited}

A limit of ``None`` means unlimited. ``unlimited`` and ``-1`` in the file
both load as ``None``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from aether_usage.periods import DEFAULT_EPOCH, PeriodStrategy

_logger = logging.getLogger("aether")


class Tier(str, Enum):
    """Canonical service tiers, lowest first."""

    STANDARD = "Standard"
    LEGEND = "Legend"
    VIP = "VIP"


class ResourceKind(str, Enum):
    """Independently rate-limited resources."""

    PREMIUM_MODEL = "premium_model"
    RESPONSES = "responses"


TIER_ORDER: List[Tier] = [Tier.STANDARD, Tier.LEGEND, Tier.VIP]

# Legacy spellings seen in stored user documents
_TIER_ALIASES = {
    "standard": Tier.STANDARD,
    "legend": Tier.LEGEND,
    "legendary": Tier.LEGEND,
    "vip": Tier.VIP,
}


def lookup_tier(value: Union[str, Tier, None]) -> Optional[Tier]:
    """Return the canonical tier for a spelling, or None if unrecognized."""
    if isinstance(value, Tier):
        return value
    return _TIER_ALIASES.get(str(value or "").strip().lower())


def normalize_tier(value: Union[str, Tier, None]) -> Tier:
    """Map any tier spelling onto the canonical enum.

    Unknown or missing values resolve to the most restrictive tier.
    """
    tier = lookup_tier(value)
    if tier is None:
        _logger.warning("Unknown tier %r, defaulting to %s", value, Tier.STANDARD.value)
        return Tier.STANDARD
    return tier


def parse_limit(raw: Any) -> Optional[int]:
    """Parse a configured limit; ``None`` means unlimited."""
    if raw is None:
        return None
    if isinstance(raw, str):
        if raw.strip().lower() == "unlimited":
            return None
        raw = int(raw)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError("Invalid limit value: {!r}".format(raw))
    if raw == -1:
        return None
    if raw < 0:
        raise ValueError("Limit must be >= 0 or -1 for unlimited, got {}".format(raw))
    return raw


@dataclass(frozen=True)
class ResourcePolicy:
    """Limits and bucketing for one resource kind."""

    kind: ResourceKind
    strategy: PeriodStrategy
    limits: Dict[Tier, Optional[int]]
    period_length_days: int = 14
    epoch: date = DEFAULT_EPOCH

    def limit_for(self, tier: Tier) -> Optional[int]:
        if tier in self.limits:
            return self.limits[tier]
        return self.most_restrictive()

    def most_restrictive(self) -> Optional[int]:
        bounded = [v for v in self.limits.values() if v is not None]
        if bounded:
            return min(bounded)
        # A table where every tier is unlimited has nothing stricter to offer
        return None


@dataclass(frozen=True)
class TierPolicy:
    """Process-wide tier to limit table."""

    resources: Dict[ResourceKind, ResourcePolicy] = field(default_factory=dict)
    version: str = "1.0"

    def resource(self, kind: ResourceKind) -> ResourcePolicy:
        try:
            return self.resources[kind]
        except KeyError:
            raise ValueError("No policy configured for resource kind '{}'".format(kind.value))

    def limit_for(self, tier: Union[str, Tier], kind: ResourceKind) -> Optional[int]:
        """Return the limit for a tier and resource kind (``None`` = unlimited)."""
        return self.resource(kind).limit_for(normalize_tier(tier))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierPolicy":
        """Create a TierPolicy from a dictionary (YAML-parsed)."""
        resources: Dict[ResourceKind, ResourcePolicy] = {}
        for kind_name, raw in (data.get("resources") or {}).items():
            try:
                kind = ResourceKind(kind_name)
            except ValueError:
                raise ValueError("Unknown resource kind '{}'".format(kind_name))

            if not isinstance(raw, dict):
                raise ValueError("Resource '{}' must be a mapping".format(kind_name))

            limits: Dict[Tier, Optional[int]] = {}
            for tier_name, limit in (raw.get("limits") or {}).items():
                tier = lookup_tier(tier_name)
                if tier is None:
                    raise ValueError(
                        "Unknown tier '{}' in resource '{}'".format(tier_name, kind_name)
                    )
                limits[tier] = parse_limit(limit)
            if not limits:
                raise ValueError("Resource '{}' has no limits".format(kind_name))

            epoch_raw = raw.get("epoch", DEFAULT_EPOCH)
            if isinstance(epoch_raw, str):
                epoch_raw = date.fromisoformat(epoch_raw)

            resources[kind] = ResourcePolicy(
                kind=kind,
                strategy=PeriodStrategy(raw.get("period", PeriodStrategy.ROLLING.value)),
                limits=limits,
                period_length_days=int(raw.get("period_length_days", 14)),
                epoch=epoch_raw,
            )

        return cls(resources=resources, version=str(data.get("version", "1.0")))


def default_tier_policy() -> TierPolicy:
    """Return the built-in tier table."""
    return TierPolicy(
        resources={
            ResourceKind.PREMIUM_MODEL: ResourcePolicy(
                kind=ResourceKind.PREMIUM_MODEL,
                strategy=PeriodStrategy.CALENDAR_MONTH,
                limits={Tier.STANDARD: 10, Tier.LEGEND: 50, Tier.VIP: None},
            ),
            ResourceKind.RESPONSES: ResourcePolicy(
                kind=ResourceKind.RESPONSES,
                strategy=PeriodStrategy.ROLLING,
                limits={Tier.STANDARD: 150, Tier.LEGEND: 3000, Tier.VIP: None},
                period_length_days=14,
                epoch=DEFAULT_EPOCH,
            ),
        }
    )


def load_tier_policy(path: Union[str, Path]) -> TierPolicy:
    """Load the tier table from a YAML file.

    Args:
        path: Path to the YAML tier file.

    Returns:
        The parsed TierPolicy.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is not a valid tier table.
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError("Tier policy file not found: {}".format(path))

    with open(policy_path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Tier policy file must contain a YAML mapping at the top level")

    return TierPolicy.from_dict(raw)


def next_tier(tier: Tier) -> Optional[Tier]:
    """Return the tier above ``tier``, or None at the top."""
    index = TIER_ORDER.index(tier)
    if index + 1 < len(TIER_ORDER):
        return TIER_ORDER[index + 1]
    return None


def tier_upgrade_info(policy: TierPolicy, tier: Union[str, Tier]) -> Dict[str, Any]:
    """Describe a tier's limits and what upgrading would unlock."""
    current = normalize_tier(tier)
    upgrade = next_tier(current)

    limits = {
        kind.value: resource.limit_for(current)
        for kind, resource in policy.resources.items()
    }

    if upgrade is None:
        prompt = "You have the ultimate Aether experience!"
    else:
        prompt = "Upgrade to {} for higher limits.".format(upgrade.value)

    return {
        "tier": current.value,
        "limits": limits,
        "next_tier": upgrade.value if upgrade else None,
        "upgrade_prompt": prompt,
    }
