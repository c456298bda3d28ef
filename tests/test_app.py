"""End-to-end tests for the HTTP surface.

The provider runs in stub mode (no API key), the store is in memory and the
tier table is the built-in one.
"""

from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import _make_config

from aether_usage import app as app_module
from aether_usage.app import app
from aether_usage.store import StoreError

DATA = {"total_messages": 42, "patterns": {"questions": 5}}


@pytest.fixture(autouse=True)
def _reset_app_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset the app's global state before each test and point to a test config."""
    config_path = _make_config(tmp_path)

    # Clear API key so stub mode is used
    monkeypatch.delenv("TEST_API_KEY", raising=False)

    monkeypatch.setattr(app_module, "CONFIG_PATH", config_path)
    monkeypatch.setattr(app_module, "_config", None)
    monkeypatch.setattr(app_module, "_store", None)
    monkeypatch.setattr(app_module, "_tier_policy", None)
    monkeypatch.setattr(app_module, "_usage_counter", None)
    monkeypatch.setattr(app_module, "_cooldown_tracker", None)
    monkeypatch.setattr(app_module, "_insight_service", None)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _create_user(client: AsyncClient, user_id: str = "u1", tier: str = "Standard") -> None:
    resp = await client.post("/v1/users", json={"user_id": user_id, "tier": tier})
    assert resp.status_code == 201


@pytest.mark.asyncio
async def test_create_user() -> None:
    async with _client() as client:
        resp = await client.post("/v1/users", json={"user_id": "u1", "tier": "Legendary"})

    assert resp.status_code == 201
    data = resp.json()
    assert data["user_id"] == "u1"
    assert data["tier"] == "Legend"
    assert data["created_at"]


@pytest.mark.asyncio
async def test_create_user_invalid_tier() -> None:
    async with _client() as client:
        resp = await client.post("/v1/users", json={"user_id": "u1", "tier": "Gold"})

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_create_user_missing_id_is_validation_error() -> None:
    async with _client() as client:
        resp = await client.post("/v1/users", json={"tier": "VIP"})

    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_new_user_usage() -> None:
    async with _client() as client:
        await _create_user(client)
        resp = await client.get("/v1/usage/u1/responses")

    assert resp.status_code == 200
    data = resp.json()
    assert data["tier"] == "Standard"
    assert data["kind"] == "responses"
    assert data["limit"] == 150
    assert data["used"] == 0
    assert data["remaining"] == 150
    assert data["can_consume"] is True


@pytest.mark.asyncio
async def test_unknown_user_usage_fails_closed() -> None:
    async with _client() as client:
        resp = await client.get("/v1/usage/ghost/premium_model")

    assert resp.status_code == 200
    data = resp.json()
    assert data["remaining"] == 0
    assert data["can_consume"] is False


@pytest.mark.asyncio
async def test_unknown_resource_kind() -> None:
    async with _client() as client:
        resp = await client.get("/v1/usage/u1/uploads")

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_consume_until_limit() -> None:
    async with _client() as client:
        await _create_user(client)
        for i in range(10):
            resp = await client.post("/v1/usage/u1/premium_model/consume")
            assert resp.status_code == 200
            assert resp.json()["usage"]["used"] == i + 1

        resp = await client.post("/v1/usage/u1/premium_model/consume")

    assert resp.status_code == 429
    data = resp.json()
    assert data["error"]["type"] == "period_limit_reached"
    assert "Legend" in data["error"]["message"]
    assert data["usage"]["used"] == 10
    assert data["usage"]["remaining"] == 0


@pytest.mark.asyncio
async def test_consume_unknown_user_denied() -> None:
    async with _client() as client:
        resp = await client.post("/v1/usage/ghost/responses/consume")

    assert resp.status_code == 429
    assert resp.json()["error"]["type"] == "user_not_found"


@pytest.mark.asyncio
async def test_vip_is_unlimited() -> None:
    async with _client() as client:
        await _create_user(client, tier="VIP")
        for _ in range(12):
            resp = await client.post("/v1/usage/u1/premium_model/consume")
            assert resp.status_code == 200

    usage = resp.json()["usage"]
    assert usage["is_unlimited"] is True
    assert usage["limit"] is None
    assert usage["remaining"] is None


@pytest.mark.asyncio
async def test_set_tier() -> None:
    async with _client() as client:
        await _create_user(client)
        resp = await client.put("/v1/users/u1/tier", json={"tier": "VIP"})
        assert resp.status_code == 200
        assert resp.json()["tier"] == "VIP"

        usage = await client.get("/v1/usage/u1/responses")
        assert usage.json()["is_unlimited"] is True

        bad = await client.put("/v1/users/u1/tier", json={"tier": "Gold"})
        assert bad.status_code == 400

        missing = await client.put("/v1/users/ghost/tier", json={"tier": "VIP"})
        assert missing.status_code == 404
        assert missing.json()["error"]["type"] == "user_not_found"


@pytest.mark.asyncio
async def test_select_model() -> None:
    async with _client() as client:
        await _create_user(client)
        premium = await client.post(
            "/v1/models/select", json={"user_id": "u1", "query_type": "profile_analysis"}
        )
        fast = await client.post("/v1/models/select", json={"user_id": "u1"})

    assert premium.status_code == 200
    assert premium.json()["model"] == "test-premium-model"
    assert premium.json()["usage"]["used"] == 1

    assert fast.json()["model"] == "test-model"
    assert fast.json()["reason"] == "default_fast"
    assert fast.json()["usage"] is None


@pytest.mark.asyncio
async def test_get_tier() -> None:
    async with _client() as client:
        resp = await client.get("/v1/tiers/Standard")
        unknown = await client.get("/v1/tiers/Gold")

    assert resp.status_code == 200
    data = resp.json()
    assert data["tier"] == "Standard"
    assert data["next_tier"] == "Legend"
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_insight_then_cooldown() -> None:
    async with _client() as client:
        first = await client.post("/v1/insights/u1/communication", json={"data": DATA})
        second = await client.post("/v1/insights/u1/communication", json={"data": DATA})
        history = await client.get("/v1/insights/u1")
        cooldowns = await client.get("/v1/insights/u1/cooldowns")

    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "generated"
    assert body["reason"] == "first_generation"
    assert body["insight"]
    assert body["is_fallback"] is False

    assert second.status_code == 429
    assert second.json()["status"] == "on_cooldown"
    assert second.json()["remaining_seconds"] > 0
    assert int(second.headers["Retry-After"]) > 0

    insights = history.json()["insights"]
    assert len(insights) == 1
    assert insights[0]["category"] == "communication"

    status = cooldowns.json()["cooldowns"]
    assert status["communication"]["is_active"] is True
    assert status["growth"]["is_active"] is False


@pytest.mark.asyncio
async def test_insight_force_and_changed_data() -> None:
    async with _client() as client:
        await client.post("/v1/insights/u1/growth", json={"data": DATA})
        forced = await client.post(
            "/v1/insights/u1/growth", json={"data": DATA, "force": True}
        )
        changed = await client.post(
            "/v1/insights/u1/growth", json={"data": {"total_messages": 90}}
        )

    assert forced.status_code == 200
    assert forced.json()["reason"] == "forced"
    assert changed.status_code == 200
    assert changed.json()["reason"] == "data_changed"


@pytest.mark.asyncio
async def test_forced_insight_restarts_cooldown() -> None:
    async with _client() as client:
        await client.post("/v1/insights/u1/growth", json={"data": DATA})
        before = await client.get("/v1/insights/u1/cooldowns")
        forced = await client.post(
            "/v1/insights/u1/growth", json={"data": DATA, "force": True}
        )
        after = await client.get("/v1/insights/u1/cooldowns")
        blocked = await client.post("/v1/insights/u1/growth", json={"data": DATA})

    assert forced.status_code == 200
    assert after.json()["cooldowns"]["growth"]["attempt_count"] == 2
    assert (
        after.json()["cooldowns"]["growth"]["last_generated_at"]
        >= before.json()["cooldowns"]["growth"]["last_generated_at"]
    )
    assert blocked.status_code == 429
    assert blocked.json()["status"] == "on_cooldown"
    assert blocked.json()["reason"] == "cooldown_active"


@pytest.mark.asyncio
async def test_unknown_insight_category() -> None:
    async with _client() as client:
        resp = await client.post("/v1/insights/u1/astrology", json={"data": DATA})

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_insight_history_limit_bounds() -> None:
    async with _client() as client:
        resp = await client.get("/v1/insights/u1", params={"limit": 0})

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_store_failure_returns_503(monkeypatch: pytest.MonkeyPatch) -> None:
    async def broken_create_user(*args, **kwargs):
        raise StoreError("connection refused")

    store = app_module.get_store()
    monkeypatch.setattr(store, "create_user", broken_create_user)

    async with _client() as client:
        resp = await client.post("/v1/users", json={"user_id": "u1"})

    assert resp.status_code == 503
    assert resp.json()["error"]["type"] == "store_unavailable"


@pytest.mark.asyncio
async def test_misspelled_tier_file_uses_built_in_table(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    tiers = tmp_path / "tiers.yaml"
    tiers.write_text("resources:\n  responses:\n    limits: {Standard: 150, Legnd: 5000}\n")
    monkeypatch.setattr(
        app_module, "CONFIG_PATH", _make_config(tmp_path, {"tier_policy_file": str(tiers)})
    )

    async with _client() as client:
        resp = await client.get("/v1/tiers/Standard")

    assert resp.json()["limits"] == {"premium_model": 10, "responses": 150}
