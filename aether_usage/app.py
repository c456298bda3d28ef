"""FastAPI application for the Aether usage service.

Exposes tier-limited usage counters and cooldown-gated insight generation to
the rest of the Aether backend.

Request handling rules:
1. Quota exhaustion and cooldowns are normal outcomes, answered with 429 and
   the current usage or remaining time.
2. Consumption checks fail closed: unknown users and store outages are denied.
3. Insight generation never surfaces upstream errors; callers get a fallback.
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from aether_usage.auth import AuthenticationError, validate_api_key
from aether_usage.config import ServiceConfig, load_config
from aether_usage.cooldown import CooldownTracker, InsightCategory, format_remaining
from aether_usage.insights import InsightGenerator, InsightService, InsightStatus
from aether_usage.models import (
    ConsumeResponse,
    CreateUserRequest,
    ErrorDetail,
    ErrorResponse,
    InsightRequest,
    InsightResponse,
    ModelSelectionRequest,
    ModelSelectionResponse,
    SetTierRequest,
    UsageInfo,
    UserResponse,
)
from aether_usage.redis_store import RedisStore
from aether_usage.store import InMemoryStore, StoreError, UsageStore, UserAccount
from aether_usage.telemetry import log_event, logger, setup_logging
from aether_usage.tiers import (
    ResourceKind,
    TierPolicy,
    default_tier_policy,
    load_tier_policy,
    lookup_tier,
    tier_upgrade_info,
)
from aether_usage.usage import UsageCounter, utcnow

CONFIG_PATH = os.getenv("AETHER_CONFIG", "config/example.config.json")

_config: Optional[ServiceConfig] = None
_store: Optional[UsageStore] = None
_tier_policy: Optional[TierPolicy] = None
_usage_counter: Optional[UsageCounter] = None
_cooldown_tracker: Optional[CooldownTracker] = None
_insight_service: Optional[InsightService] = None


def get_config() -> ServiceConfig:
    """Return the loaded service configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_tier_policy() -> TierPolicy:
    """Return the tier table, falling back to the built-in one."""
    global _tier_policy
    if _tier_policy is None:
        cfg = get_config()
        policy = default_tier_policy()
        if cfg.tier_policy_file:
            try:
                policy = load_tier_policy(cfg.tier_policy_file)
            except (FileNotFoundError, ValueError) as exc:
                logger.warning("Using built-in tier table: %s", exc)
        _tier_policy = policy
    return _tier_policy


def get_store() -> UsageStore:
    """Return the configured store (lazy-init)."""
    global _store
    if _store is None:
        cfg = get_config()
        if cfg.store.backend == "redis":
            url = cfg.store.redis_url
            if not url:
                raise ValueError(
                    "Redis store selected but {} is not set".format(cfg.store.redis_url_env)
                )
            _store = RedisStore.from_url(url, namespace=cfg.store.namespace)
        else:
            _store = InMemoryStore()
    return _store


def get_usage_counter() -> UsageCounter:
    global _usage_counter
    if _usage_counter is None:
        _usage_counter = UsageCounter(get_store(), get_tier_policy())
    return _usage_counter


def get_cooldown_tracker() -> CooldownTracker:
    global _cooldown_tracker
    if _cooldown_tracker is None:
        _cooldown_tracker = CooldownTracker(get_store(), get_config().cooldowns)
    return _cooldown_tracker


def get_insight_service() -> InsightService:
    global _insight_service
    if _insight_service is None:
        cfg = get_config()
        generator = InsightGenerator(cfg.provider, cfg.generator)
        _insight_service = InsightService(get_store(), get_cooldown_tracker(), generator)
    return _insight_service


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, store and services on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_usage_counter()
    get_insight_service()
    yield
    if _store is not None:
        await _store.close()


app = FastAPI(title="Aether Usage Service", version="0.3.0", lifespan=lifespan)


async def authorize(x_api_key: Optional[str] = Header(default=None)) -> Optional[str]:
    """Resolve the calling service from its API key when auth is enabled."""
    cfg = get_config()
    if not cfg.auth.enabled:
        return None
    return validate_api_key(x_api_key, cfg.auth.api_keys)


v1 = APIRouter(prefix="/v1", dependencies=[Depends(authorize)])


def _request_id() -> str:
    return "ae-{}".format(uuid.uuid4().hex[:12])


def _error_response(
    status: int,
    error_type: str,
    message: str,
    usage: Optional[UsageInfo] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(
        error=ErrorDetail(type=error_type, message=message),
        usage=usage,
    )
    return JSONResponse(status_code=status, content=body.model_dump())


def _user_response(account: UserAccount) -> UserResponse:
    return UserResponse(
        user_id=account.user_id,
        tier=account.tier.value,
        created_at=account.created_at.isoformat(),
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@v1.post("/users", response_model=None)
async def create_user(request: CreateUserRequest) -> JSONResponse:
    """Register a user; usage counters start at zero."""
    tier = lookup_tier(request.tier)
    if tier is None:
        return _error_response(400, "validation_error", "Invalid tier: {}".format(request.tier))

    account = await get_store().create_user(request.user_id, tier, utcnow())
    log_event(user_id=account.user_id, action="create_user", outcome="created")
    return JSONResponse(status_code=201, content=_user_response(account).model_dump())


@v1.put("/users/{user_id}/tier", response_model=None)
async def set_tier(user_id: str, request: SetTierRequest) -> JSONResponse:
    """Change a user's tier."""
    try:
        account = await get_usage_counter().upgrade_tier(user_id, request.tier)
    except ValueError as exc:
        return _error_response(400, "validation_error", str(exc))

    if account is None:
        return _error_response(404, "user_not_found", "User {} not found.".format(user_id))

    log_event(
        user_id=user_id,
        action="set_tier",
        outcome="updated",
        detail={"tier": account.tier.value},
    )
    return JSONResponse(status_code=200, content=_user_response(account).model_dump())


@v1.get("/usage/{user_id}/{kind}", response_model=None)
async def get_usage(user_id: str, kind: ResourceKind) -> JSONResponse:
    """Return usage for the current period, rolling the period over if needed."""
    snapshot = await get_usage_counter().get_usage_info(user_id, kind)
    return JSONResponse(
        status_code=200, content=UsageInfo.from_snapshot(snapshot).model_dump()
    )


@v1.post("/usage/{user_id}/{kind}/consume", response_model=None)
async def consume(user_id: str, kind: ResourceKind) -> JSONResponse:
    """Consume one unit of a resource if the user's tier allows it."""
    request_id = _request_id()
    decision = await get_usage_counter().check_and_consume(user_id, kind)
    usage = UsageInfo.from_snapshot(decision.usage)

    log_event(
        user_id=user_id,
        action="consume_{}".format(kind.value),
        outcome="allowed" if decision.allowed else (decision.reason or "denied"),
        usage=decision.usage,
        request_id=request_id,
    )

    if not decision.allowed:
        return _error_response(
            429, decision.reason or "denied", decision.message, usage=usage
        )

    body = ConsumeResponse(
        allowed=True, reason=None, message=decision.message, usage=usage
    )
    return JSONResponse(status_code=200, content=body.model_dump())


@v1.post("/models/select", response_model=None)
async def select_model(request: ModelSelectionRequest) -> JSONResponse:
    """Pick the model for a chat request, spending premium quota if worthwhile."""
    cfg = get_config()
    selection = await get_usage_counter().select_model(
        request.user_id,
        request.query_type,
        default_model=cfg.provider.default_model,
        premium_model=cfg.provider.premium_model,
        force_default=request.force_default,
    )
    log_event(
        user_id=request.user_id,
        action="select_model",
        outcome=selection.reason,
        usage=selection.usage,
        detail={"model": selection.model},
    )

    body = ModelSelectionResponse(
        model=selection.model,
        reason=selection.reason,
        message=selection.message,
        usage=UsageInfo.from_snapshot(selection.usage) if selection.usage else None,
    )
    return JSONResponse(status_code=200, content=body.model_dump())


@v1.get("/tiers/{tier}", response_model=None)
async def get_tier(tier: str) -> JSONResponse:
    """Describe a tier's limits and its upgrade path."""
    if lookup_tier(tier) is None:
        return _error_response(404, "unknown_tier", "Unknown tier: {}".format(tier))
    return JSONResponse(status_code=200, content=tier_upgrade_info(get_tier_policy(), tier))


@v1.post("/insights/{user_id}/{category}", response_model=None)
async def request_insight(
    user_id: str, category: InsightCategory, request: InsightRequest
) -> JSONResponse:
    """Generate an insight unless the category is cooling down."""
    request_id = _request_id()
    result = await get_insight_service().request_insight(
        user_id, category, request.data.model_dump(), force=request.force
    )

    log_event(
        user_id=user_id,
        action="insight_{}".format(category.value),
        outcome=result.status.value,
        detail={"reason": result.reason, "fingerprint": result.fingerprint},
        request_id=request_id,
    )

    body = InsightResponse(
        status=result.status.value,
        category=result.category.value,
        insight=result.text,
        confidence=result.confidence,
        is_fallback=result.is_fallback,
        reason=result.reason,
        remaining_seconds=int(result.remaining_seconds),
        remaining_formatted=format_remaining(result.remaining_seconds),
        generated_at=result.generated_at.isoformat() if result.generated_at else None,
    )

    if result.status == InsightStatus.ON_COOLDOWN:
        return JSONResponse(
            status_code=429,
            content=body.model_dump(),
            headers={"Retry-After": str(max(1, int(result.remaining_seconds)))},
        )
    return JSONResponse(status_code=200, content=body.model_dump())


@v1.get("/insights/{user_id}", response_model=None)
async def list_insights(
    user_id: str, limit: int = Query(default=5, ge=1, le=50)
) -> JSONResponse:
    """List the user's most recent generated insights."""
    insights = await get_insight_service().latest_insights(user_id, limit)
    return JSONResponse(status_code=200, content={"user_id": user_id, "insights": insights})


@v1.get("/insights/{user_id}/cooldowns", response_model=None)
async def list_cooldowns(user_id: str) -> JSONResponse:
    """Report cooldown state for every insight category."""
    status = await get_cooldown_tracker().cooldown_status(user_id)
    return JSONResponse(status_code=200, content={"user_id": user_id, "cooldowns": status})


app.include_router(v1)


@app.exception_handler(AuthenticationError)
async def authentication_exception_handler(
    request: Request, exc: AuthenticationError
) -> JSONResponse:
    return _error_response(401, "authentication_error", exc.detail)


@app.exception_handler(StoreError)
async def store_exception_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Store failure on %s: %s", request.url.path, exc.detail)
    return _error_response(503, "store_unavailable", "Usage store is unavailable.")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        "validation_error",
        "Request validation failed: {}".format(exc.errors()),
    )
