"""Redis-backed store.

User creation, rollover, compare-and-increment and insight pruning run as Lua
scripts, so each check and the write it guards happen in one server-side step
no matter how many service processes share the database.

Key layout (``ns`` defaults to ``aether``)::

    {ns}:user:{user_id}                  hash  tier, created_at
    {ns}:usage:{user_id}:{kind}          hash  period_key, period_count, total_count, last_reset
    {ns}:cooldown:{user_id}:{category}   hash  last_generated_at, data_fingerprint, ...
    {ns}:cooldowns:{user_id}             set   categories with a cooldown record
    {ns}:insights:{user_id}              zset  categories scored by generation time
    {ns}:insight:{user_id}               hash  category -> JSON insight record
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from aether_usage.store import (
    INSIGHT_TTL,
    CooldownRecord,
    IncrementResult,
    InsightRecord,
    StoreError,
    UsageRecord,
    UsageStore,
    UserAccount,
)
from aether_usage.tiers import ResourceKind, Tier, normalize_tier

# Period keys sort chronologically; the count only resets for a newer key.
# KEYS: user_hash, usage_hash
# ARGV: period_key, now_iso
# Returns {found, period_key, period_count, total_count, last_reset}
_LUA_ROLLOVER = r"""
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {0}
end

local cur = redis.call('HGET', KEYS[2], 'period_key')
if (not cur) or cur == '' or ARGV[1] > cur then
  redis.call('HSET', KEYS[2], 'period_key', ARGV[1], 'period_count', 0, 'last_reset', ARGV[2])
end

local h = redis.call('HMGET', KEYS[2], 'period_key', 'period_count', 'total_count', 'last_reset')
return {1, h[1] or '', h[2] or '0', h[3] or '0', h[4] or ''}
"""

# KEYS: user_hash, usage_hash
# ARGV: period_key, now_iso, limit (-1 = unlimited)
# Returns {found, applied, period_key, period_count, total_count, last_reset}
_LUA_TRY_INCREMENT = r"""
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {0}
end

local cur = redis.call('HGET', KEYS[2], 'period_key')
if (not cur) or cur == '' or ARGV[1] > cur then
  redis.call('HSET', KEYS[2], 'period_key', ARGV[1], 'period_count', 0, 'last_reset', ARGV[2])
end

local count = tonumber(redis.call('HGET', KEYS[2], 'period_count') or '0')
local limit = tonumber(ARGV[3])
local applied = 0
if limit < 0 or count < limit then
  redis.call('HINCRBY', KEYS[2], 'period_count', 1)
  redis.call('HINCRBY', KEYS[2], 'total_count', 1)
  applied = 1
end

local h = redis.call('HMGET', KEYS[2], 'period_key', 'period_count', 'total_count', 'last_reset')
return {1, applied, h[1] or '', h[2] or '0', h[3] or '0', h[4] or ''}
"""

# KEYS: cooldown_hash, cooldown_index
# ARGV: category, generated_at_iso, fingerprint, cooldown_seconds, user_id
_LUA_PUT_COOLDOWN = r"""
redis.call('HSET', KEYS[1],
  'user_id', ARGV[5],
  'category', ARGV[1],
  'last_generated_at', ARGV[2],
  'data_fingerprint', ARGV[3],
  'cooldown_seconds', ARGV[4])
local attempts = redis.call('HINCRBY', KEYS[1], 'attempt_count', 1)
redis.call('SADD', KEYS[2], ARGV[1])
return attempts
"""

# KEYS: user_hash, usage_hash per resource kind
# ARGV: tier, created_at_iso
# Returns 1 if the user was created, 0 if it already existed
_LUA_CREATE_USER = r"""
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end

redis.call('HSET', KEYS[1], 'tier', ARGV[1], 'created_at', ARGV[2])
for i = 2, #KEYS do
  redis.call('HSET', KEYS[i], 'period_key', '', 'period_count', 0, 'total_count', 0)
end
return 1
"""

# KEYS: insight_index, insight_hash
# ARGV: category, record_json, score, cutoff_score, ttl_seconds
# Returns the number of expired categories removed
_LUA_ADD_INSIGHT = r"""
redis.call('HSET', KEYS[2], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[1], ARGV[3], ARGV[1])

local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[4])
for _, category in ipairs(expired) do
  redis.call('HDEL', KEYS[2], category)
end
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[4])

redis.call('EXPIRE', KEYS[1], ARGV[5])
redis.call('EXPIRE', KEYS[2], ARGV[5])
return #expired
"""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _usage_from_reply(reply: Sequence[Any]) -> UsageRecord:
    """Build a UsageRecord from the trailing four script return values."""
    period_key, period_count, total_count, last_reset = reply[-4:]
    return UsageRecord(
        period_key=str(period_key),
        period_count=int(period_count),
        total_count=int(total_count),
        last_reset=_parse_dt(str(last_reset)),
    )


def _cooldown_from_hash(data: Dict[str, str]) -> CooldownRecord:
    return CooldownRecord(
        user_id=data["user_id"],
        category=data["category"],
        last_generated_at=datetime.fromisoformat(data["last_generated_at"]),
        data_fingerprint=data["data_fingerprint"],
        cooldown_seconds=int(data["cooldown_seconds"]),
        attempt_count=int(data.get("attempt_count", 1)),
    )


def _insight_to_json(record: InsightRecord) -> str:
    return json.dumps(
        {
            "user_id": record.user_id,
            "category": record.category,
            "text": record.text,
            "confidence": record.confidence,
            "fingerprint": record.fingerprint,
            "generated_at": record.generated_at.isoformat(),
            "data_points": record.data_points,
            "model": record.model,
            "processing_ms": record.processing_ms,
        },
        sort_keys=True,
    )


def _insight_from_json(raw: str) -> InsightRecord:
    data = json.loads(raw)
    data["generated_at"] = datetime.fromisoformat(data["generated_at"])
    return InsightRecord(**data)


class RedisStore(UsageStore):
    """UsageStore backed by a shared Redis instance."""

    def __init__(self, redis: Redis, *, namespace: str = "aether") -> None:
        self.r = redis
        self.ns = namespace

    @classmethod
    def from_url(cls, url: str, *, namespace: str = "aether") -> "RedisStore":
        return cls(Redis.from_url(url, decode_responses=True), namespace=namespace)

    def _key(self, *parts: str) -> str:
        return ":".join([self.ns, *parts])

    async def create_user(self, user_id: str, tier: Tier, now: datetime) -> UserAccount:
        usage_keys = [self._key("usage", user_id, kind.value) for kind in ResourceKind]
        try:
            await self.r.eval(
                _LUA_CREATE_USER,
                1 + len(usage_keys),
                self._key("user", user_id),
                *usage_keys,
                tier.value,
                now.isoformat(),
            )
        except RedisError as exc:
            raise StoreError("Failed to create user {}: {}".format(user_id, exc))

        account = await self.get_user(user_id)
        if account is None:
            raise StoreError("User {} vanished after creation".format(user_id))
        return account

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        try:
            data = await self.r.hgetall(self._key("user", user_id))
        except RedisError as exc:
            raise StoreError("Failed to read user {}: {}".format(user_id, exc))

        if not data:
            return None
        return UserAccount(
            user_id=user_id,
            tier=normalize_tier(data.get("tier")),
            created_at=_parse_dt(data.get("created_at")) or datetime.fromtimestamp(0),
        )

    async def set_tier(self, user_id: str, tier: Tier) -> Optional[UserAccount]:
        user_key = self._key("user", user_id)
        try:
            if not await self.r.exists(user_key):
                return None
            await self.r.hset(user_key, "tier", tier.value)
        except RedisError as exc:
            raise StoreError("Failed to update tier for {}: {}".format(user_id, exc))
        return await self.get_user(user_id)

    async def rollover(
        self, user_id: str, kind: ResourceKind, period_key: str, now: datetime
    ) -> Optional[UsageRecord]:
        try:
            reply = await self.r.eval(
                _LUA_ROLLOVER,
                2,
                self._key("user", user_id),
                self._key("usage", user_id, kind.value),
                period_key,
                now.isoformat(),
            )
        except RedisError as exc:
            raise StoreError("Failed to roll over usage for {}: {}".format(user_id, exc))

        if not int(reply[0]):
            return None
        return _usage_from_reply(reply)

    async def try_increment(
        self,
        user_id: str,
        kind: ResourceKind,
        period_key: str,
        limit: Optional[int],
        now: datetime,
    ) -> Optional[IncrementResult]:
        try:
            reply = await self.r.eval(
                _LUA_TRY_INCREMENT,
                2,
                self._key("user", user_id),
                self._key("usage", user_id, kind.value),
                period_key,
                now.isoformat(),
                -1 if limit is None else int(limit),
            )
        except RedisError as exc:
            raise StoreError("Failed to increment usage for {}: {}".format(user_id, exc))

        if not int(reply[0]):
            return None
        return IncrementResult(applied=bool(int(reply[1])), record=_usage_from_reply(reply))

    async def get_cooldown(self, user_id: str, category: str) -> Optional[CooldownRecord]:
        try:
            data = await self.r.hgetall(self._key("cooldown", user_id, category))
        except RedisError as exc:
            raise StoreError("Failed to read cooldown for {}: {}".format(user_id, exc))
        return _cooldown_from_hash(data) if data else None

    async def list_cooldowns(self, user_id: str) -> List[CooldownRecord]:
        try:
            categories = await self.r.smembers(self._key("cooldowns", user_id))
        except RedisError as exc:
            raise StoreError("Failed to list cooldowns for {}: {}".format(user_id, exc))

        records = []
        for category in sorted(categories):
            record = await self.get_cooldown(user_id, category)
            if record is not None:
                records.append(record)
        return records

    async def put_cooldown(
        self,
        user_id: str,
        category: str,
        fingerprint: str,
        generated_at: datetime,
        cooldown_seconds: int,
    ) -> CooldownRecord:
        try:
            attempts = await self.r.eval(
                _LUA_PUT_COOLDOWN,
                2,
                self._key("cooldown", user_id, category),
                self._key("cooldowns", user_id),
                category,
                generated_at.isoformat(),
                fingerprint,
                int(cooldown_seconds),
                user_id,
            )
        except RedisError as exc:
            raise StoreError("Failed to record cooldown for {}: {}".format(user_id, exc))

        return CooldownRecord(
            user_id=user_id,
            category=category,
            last_generated_at=generated_at,
            data_fingerprint=fingerprint,
            cooldown_seconds=int(cooldown_seconds),
            attempt_count=int(attempts),
        )

    async def add_insight(self, record: InsightRecord) -> None:
        score = record.generated_at.timestamp()
        try:
            await self.r.eval(
                _LUA_ADD_INSIGHT,
                2,
                self._key("insights", record.user_id),
                self._key("insight", record.user_id),
                record.category,
                _insight_to_json(record),
                score,
                score - INSIGHT_TTL.total_seconds(),
                int(INSIGHT_TTL.total_seconds()),
            )
        except RedisError as exc:
            raise StoreError("Failed to store insight for {}: {}".format(record.user_id, exc))

    async def latest_insights(self, user_id: str, limit: int = 10) -> List[InsightRecord]:
        if limit <= 0:
            return []
        try:
            categories = await self.r.zrevrange(self._key("insights", user_id), 0, limit - 1)
            raw = []
            if categories:
                raw = await self.r.hmget(self._key("insight", user_id), categories)
        except RedisError as exc:
            raise StoreError("Failed to read insights for {}: {}".format(user_id, exc))
        return [_insight_from_json(item) for item in raw if item]

    async def close(self) -> None:
        await self.r.aclose()
