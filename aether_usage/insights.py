"""Insight generation with cooldowns, retries and fallbacks.

``InsightGenerator`` calls the text-generation provider with a per-attempt
timeout and retries transient failures with exponential backoff. When every
attempt fails it returns a fixed, category-specific fallback insight flagged
as such, so the feature degrades instead of surfacing upstream errors.

``InsightService.request_insight`` ties the cooldown tracker and the generator
together. A cooldown is only recorded after a genuine generation completes;
fallbacks and cancelled attempts leave the cooldown state untouched.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from aether_usage.config import GeneratorConfig, ProviderConfig
from aether_usage.cooldown import CooldownTracker, InsightCategory, compute_fingerprint
from aether_usage.provider import call_provider
from aether_usage.store import INSIGHT_TTL, InsightRecord, UsageStore
from aether_usage.usage import utcnow

_logger = logging.getLogger("aether")

GENERATED_CONFIDENCE = 0.85
FALLBACK_CONFIDENCE = 0.5
STALE_AFTER = INSIGHT_TTL

FALLBACK_INSIGHTS: Dict[InsightCategory, str] = {
    InsightCategory.COMMUNICATION: (
        "Your communication patterns indicate a preference for clear, structured dialogue."
    ),
    InsightCategory.PERSONALITY: (
        "Analysis suggests balanced traits with strong analytical and empathetic tendencies."
    ),
    InsightCategory.BEHAVIORAL: (
        "Behavioral patterns show consistency in decision-making and problem-solving approaches."
    ),
    InsightCategory.EMOTIONAL: (
        "Emotional intelligence indicators suggest high self-awareness and regulation."
    ),
    InsightCategory.GROWTH: (
        "Growth trajectory shows continuous learning and adaptation patterns."
    ),
}

_RETRYABLE_STATUS = {408, 429}


class EmptyCompletionError(Exception):
    """Raised when the provider answers with no usable text."""


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TransportError, EmptyCompletionError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in _RETRYABLE_STATUS or status >= 500
    return False


def build_messages(category: InsightCategory, data: Mapping[str, Any]) -> List[Dict[str, str]]:
    """Build the chat messages for one category insight."""
    return [
        {
            "role": "system",
            "content": (
                "You write one short, specific insight about a user's {} patterns "
                "based on aggregated chat statistics. Two sentences at most."
            ).format(category.value),
        },
        {"role": "user", "content": json.dumps(dict(data), sort_keys=True, default=str)},
    ]


@dataclass
class GeneratedInsight:
    """Text produced for an insight request, genuine or fallback."""

    text: str
    confidence: float
    model: str
    is_fallback: bool
    attempts: int
    processing_ms: int


class InsightGenerator:
    """Calls the provider with bounded attempts and a guaranteed result."""

    def __init__(
        self,
        provider: ProviderConfig,
        config: Optional[GeneratorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.config = config or GeneratorConfig()
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.config.base_delay_seconds * (2 ** (attempt - 1))

    def fallback(self, category: InsightCategory, attempts: int, started: float) -> GeneratedInsight:
        return GeneratedInsight(
            text=FALLBACK_INSIGHTS[category],
            confidence=FALLBACK_CONFIDENCE,
            model="fallback",
            is_fallback=True,
            attempts=attempts,
            processing_ms=int((time.monotonic() - started) * 1000),
        )

    async def generate(
        self, category: InsightCategory, data: Mapping[str, Any], model: Optional[str] = None
    ) -> GeneratedInsight:
        """Generate an insight, falling back after the last failed attempt."""
        model = model or self.provider.default_model
        messages = build_messages(category, data)
        timeout = self.config.attempt_timeout_seconds
        started = time.monotonic()

        attempt = 0
        while attempt < self.config.max_attempts:
            attempt += 1
            try:
                result = await asyncio.wait_for(
                    call_provider(
                        self.provider,
                        model,
                        messages,
                        temperature=self.config.temperature,
                        max_tokens=self.config.max_tokens,
                        timeout=timeout,
                    ),
                    timeout=timeout,
                )
                text = result.content.strip()
                if not text:
                    raise EmptyCompletionError("Provider returned empty content")

                return GeneratedInsight(
                    text=text,
                    confidence=GENERATED_CONFIDENCE,
                    model=result.model,
                    is_fallback=False,
                    attempts=attempt,
                    processing_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception as exc:
                if not _is_transient(exc):
                    _logger.error(
                        "Insight generation for %s failed permanently: %r", category.value, exc
                    )
                    break

                _logger.warning(
                    "Insight generation for %s failed (attempt %d/%d): %r",
                    category.value,
                    attempt,
                    self.config.max_attempts,
                    exc,
                )
                if attempt < self.config.max_attempts:
                    await self._sleep(self.backoff_delay(attempt))

        return self.fallback(category, attempt, started)


class InsightStatus(str, Enum):
    """Outcome of an insight request."""

    GENERATED = "generated"
    FALLBACK = "fallback"
    ON_COOLDOWN = "on_cooldown"


@dataclass
class InsightResult:
    """Result of ``InsightService.request_insight``."""

    status: InsightStatus
    category: InsightCategory
    text: str = ""
    confidence: float = 0.0
    reason: str = ""
    remaining_seconds: float = 0.0
    fingerprint: str = ""
    generated_at: Optional[datetime] = None

    @property
    def is_fallback(self) -> bool:
        return self.status == InsightStatus.FALLBACK


class InsightService:
    """Gate insight generation behind per-category cooldowns."""

    def __init__(
        self,
        store: UsageStore,
        tracker: CooldownTracker,
        generator: InsightGenerator,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.generator = generator
        self.clock = clock

    async def request_insight(
        self,
        user_id: str,
        category: Union[str, InsightCategory],
        data: Mapping[str, Any],
        force: bool = False,
    ) -> InsightResult:
        """Return a fresh insight, a fallback, or the remaining cooldown.

        Raises:
            ValueError: If ``category`` is not a known insight category.
            StoreError: If cooldown state cannot be read or written.
        """
        category = InsightCategory(category)
        fingerprint = compute_fingerprint(category, data)

        check = await self.tracker.can_generate(user_id, category, fingerprint, force=force)
        if not check.allowed:
            return InsightResult(
                status=InsightStatus.ON_COOLDOWN,
                category=category,
                reason=check.reason,
                remaining_seconds=check.remaining_seconds,
                fingerprint=fingerprint,
            )

        insight = await self.generator.generate(category, data)
        if insight.is_fallback:
            return InsightResult(
                status=InsightStatus.FALLBACK,
                category=category,
                text=insight.text,
                confidence=insight.confidence,
                reason="generation_failed",
                fingerprint=fingerprint,
            )

        now = self.clock()
        await self.tracker.record_generation(user_id, category, fingerprint, now)
        await self.store.add_insight(
            InsightRecord(
                user_id=user_id,
                category=category.value,
                text=insight.text,
                confidence=insight.confidence,
                fingerprint=fingerprint,
                generated_at=now,
                data_points=int(data.get("total_messages", 0) or 0),
                model=insight.model,
                processing_ms=insight.processing_ms,
            )
        )

        return InsightResult(
            status=InsightStatus.GENERATED,
            category=category,
            text=insight.text,
            confidence=insight.confidence,
            reason=check.reason,
            fingerprint=fingerprint,
            generated_at=now,
        )

    async def latest_insights(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """List a user's most recent insights, newest first."""
        now = self.clock()
        records = await self.store.latest_insights(user_id, limit)
        return [
            {
                "category": r.category,
                "insight": r.text,
                "confidence": r.confidence,
                "generated_at": r.generated_at.isoformat(),
                "data_points": r.data_points,
                "model": r.model,
                "is_stale": now - r.generated_at > STALE_AFTER,
            }
            for r in records
        ]
