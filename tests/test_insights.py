"""Tests for insight generation, retries, fallbacks and cooldown gating."""

import asyncio
from typing import List

import httpx
import pytest

from aether_usage.config import CooldownConfig, GeneratorConfig, ProviderConfig
from aether_usage.cooldown import CooldownTracker, InsightCategory
from aether_usage.insights import (
    FALLBACK_CONFIDENCE,
    FALLBACK_INSIGHTS,
    GENERATED_CONFIDENCE,
    InsightGenerator,
    InsightService,
    InsightStatus,
    build_messages,
)
from aether_usage.provider import ProviderResult

COMM = InsightCategory.COMMUNICATION
DATA = {"total_messages": 42, "patterns": {"questions": 5}, "communication_style": "direct"}


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("upstream error", request=request, response=response)


class FakeProvider:
    """Replays a script of results or exceptions, one per call."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, provider, model, messages, **kwargs) -> ProviderResult:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else "Steady engagement."
        if isinstance(outcome, BaseException):
            raise outcome
        return ProviderResult(content=outcome, model=model)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _generator(sleep=None, **overrides) -> InsightGenerator:
    settings = {"max_attempts": 3, "base_delay_seconds": 1.0, "attempt_timeout_seconds": 1.0}
    settings.update(overrides)
    return InsightGenerator(
        ProviderConfig(default_model="test-model"),
        GeneratorConfig(**settings),
        sleep=sleep or RecordingSleep(),
    )


def _service(store, clock, generator) -> InsightService:
    tracker = CooldownTracker(
        store, CooldownConfig(minutes={}, default_minutes=30), clock=clock
    )
    return InsightService(store, tracker, generator, clock=clock)


def test_build_messages_mentions_category() -> None:
    messages = build_messages(InsightCategory.EMOTIONAL, {"total_messages": 3})
    assert messages[0]["role"] == "system"
    assert "emotional" in messages[0]["content"]
    assert '"total_messages": 3' in messages[1]["content"]


class TestGenerator:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, monkeypatch) -> None:
        fake = FakeProvider("  You ask a lot of questions.  ")
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)
        sleep = RecordingSleep()

        insight = await _generator(sleep).generate(COMM, DATA)

        assert insight.text == "You ask a lot of questions."
        assert insight.confidence == GENERATED_CONFIDENCE
        assert insight.model == "test-model"
        assert not insight.is_fallback
        assert insight.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors_with_backoff(self, monkeypatch) -> None:
        fake = FakeProvider(
            httpx.ConnectError("connection refused"),
            _status_error(503),
            "Third time lucky.",
        )
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)
        sleep = RecordingSleep()

        insight = await _generator(sleep).generate(COMM, DATA)

        assert insight.text == "Third time lucky."
        assert insight.attempts == 3
        assert fake.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_falls_back_after_all_attempts_fail(self, monkeypatch) -> None:
        fake = FakeProvider(_status_error(500), _status_error(502), _status_error(429))
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)
        sleep = RecordingSleep()

        insight = await _generator(sleep).generate(COMM, DATA)

        assert insight.is_fallback
        assert insight.text == FALLBACK_INSIGHTS[COMM]
        assert insight.confidence == FALLBACK_CONFIDENCE
        assert insight.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, monkeypatch) -> None:
        fake = FakeProvider(_status_error(400), "never reached")
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)
        sleep = RecordingSleep()

        insight = await _generator(sleep).generate(COMM, DATA)

        assert insight.is_fallback
        assert insight.attempts == 1
        assert fake.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_empty_content_is_retried(self, monkeypatch) -> None:
        fake = FakeProvider("   ", "Now with words.")
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)

        insight = await _generator().generate(COMM, DATA)

        assert insight.text == "Now with words."
        assert insight.attempts == 2

    @pytest.mark.asyncio
    async def test_slow_attempts_time_out(self, monkeypatch) -> None:
        calls = []

        async def slow_provider(provider, model, messages, **kwargs):
            calls.append(model)
            await asyncio.sleep(5)
            return ProviderResult(content="too late", model=model)

        monkeypatch.setattr("aether_usage.insights.call_provider", slow_provider)

        insight = await _generator(max_attempts=2, attempt_timeout_seconds=0.01).generate(
            COMM, DATA
        )

        assert insight.is_fallback
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_explicit_model(self, monkeypatch) -> None:
        monkeypatch.setattr("aether_usage.insights.call_provider", FakeProvider("ok"))
        insight = await _generator().generate(COMM, DATA, model="deep-model")
        assert insight.model == "deep-model"

    def test_backoff_delay_doubles(self) -> None:
        generator = _generator(base_delay_seconds=0.5)
        assert [generator.backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


class TestInsightService:
    @pytest.mark.asyncio
    async def test_generation_records_cooldown_and_history(
        self, monkeypatch, store, clock
    ) -> None:
        monkeypatch.setattr("aether_usage.insights.call_provider", FakeProvider("Fresh."))
        service = _service(store, clock, _generator())

        result = await service.request_insight("u1", "communication", DATA)

        assert result.status == InsightStatus.GENERATED
        assert result.text == "Fresh."
        assert result.reason == "first_generation"
        assert result.generated_at == clock()

        cooldown = await store.get_cooldown("u1", "communication")
        assert cooldown is not None
        assert cooldown.data_fingerprint == result.fingerprint

        history = await service.latest_insights("u1")
        assert len(history) == 1
        assert history[0]["insight"] == "Fresh."
        assert history[0]["data_points"] == 42
        assert history[0]["is_stale"] is False

    @pytest.mark.asyncio
    async def test_repeat_request_is_on_cooldown(self, monkeypatch, store, clock) -> None:
        fake = FakeProvider("One.", "Two.")
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)
        service = _service(store, clock, _generator())

        await service.request_insight("u1", COMM, DATA)
        clock.advance(minutes=29)
        result = await service.request_insight("u1", COMM, DATA)

        assert result.status == InsightStatus.ON_COOLDOWN
        assert result.reason == "cooldown_active"
        assert result.remaining_seconds == pytest.approx(60)
        assert result.text == ""
        assert fake.calls == 1

        clock.advance(minutes=2)
        again = await service.request_insight("u1", COMM, DATA)
        assert again.status == InsightStatus.GENERATED
        assert again.reason == "cooldown_expired"

    @pytest.mark.asyncio
    async def test_changed_data_and_force_bypass_cooldown(
        self, monkeypatch, store, clock
    ) -> None:
        monkeypatch.setattr("aether_usage.insights.call_provider", FakeProvider())
        service = _service(store, clock, _generator())

        await service.request_insight("u1", COMM, DATA)
        changed = dict(DATA, total_messages=80)
        assert (await service.request_insight("u1", COMM, changed)).reason == "data_changed"

        forced = await service.request_insight("u1", COMM, changed, force=True)
        assert forced.status == InsightStatus.GENERATED
        assert forced.reason == "forced"

    @pytest.mark.asyncio
    async def test_forced_generation_restarts_cooldown(
        self, monkeypatch, store, clock
    ) -> None:
        monkeypatch.setattr("aether_usage.insights.call_provider", FakeProvider())
        service = _service(store, clock, _generator())

        await service.request_insight("u1", COMM, DATA)
        first = await store.get_cooldown("u1", "communication")

        clock.advance(minutes=10)
        forced = await service.request_insight("u1", COMM, DATA, force=True)
        assert forced.status == InsightStatus.GENERATED

        stored = await store.get_cooldown("u1", "communication")
        assert stored.last_generated_at == clock()
        assert stored.last_generated_at > first.last_generated_at
        assert stored.data_fingerprint == forced.fingerprint
        assert stored.attempt_count == 2

        clock.advance(minutes=29)
        blocked = await service.request_insight("u1", COMM, DATA)
        assert blocked.status == InsightStatus.ON_COOLDOWN
        assert blocked.remaining_seconds == pytest.approx(60)

    @pytest.mark.asyncio
    async def test_fallback_does_not_start_cooldown(self, monkeypatch, store, clock) -> None:
        fake = FakeProvider(_status_error(503), _status_error(503), _status_error(503), "Real.")
        monkeypatch.setattr("aether_usage.insights.call_provider", fake)
        service = _service(store, clock, _generator())

        fallback = await service.request_insight("u1", COMM, DATA)
        assert fallback.status == InsightStatus.FALLBACK
        assert fallback.is_fallback
        assert fallback.confidence == FALLBACK_CONFIDENCE
        assert await store.get_cooldown("u1", "communication") is None
        assert await service.latest_insights("u1") == []

        retry = await service.request_insight("u1", COMM, DATA)
        assert retry.status == InsightStatus.GENERATED
        assert retry.text == "Real."

    @pytest.mark.asyncio
    async def test_cancelled_generation_leaves_no_cooldown(
        self, monkeypatch, store, clock
    ) -> None:
        started = asyncio.Event()

        async def hanging_provider(provider, model, messages, **kwargs):
            started.set()
            await asyncio.Event().wait()

        monkeypatch.setattr("aether_usage.insights.call_provider", hanging_provider)
        service = _service(store, clock, _generator(attempt_timeout_seconds=30.0))

        task = asyncio.ensure_future(service.request_insight("u1", COMM, DATA))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await store.get_cooldown("u1", "communication") is None

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(self, store, clock) -> None:
        service = _service(store, clock, _generator())
        with pytest.raises(ValueError):
            await service.request_insight("u1", "astrology", DATA)

    @pytest.mark.asyncio
    async def test_old_insights_are_stale(self, monkeypatch, store, clock) -> None:
        monkeypatch.setattr("aether_usage.insights.call_provider", FakeProvider())
        service = _service(store, clock, _generator())

        await service.request_insight("u1", COMM, DATA)
        clock.advance(days=8)

        history = await service.latest_insights("u1")
        assert history[0]["is_stale"] is True
