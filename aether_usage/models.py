"""Request and response models for the Aether usage service."""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from aether_usage.usage import UsageSnapshot


class CreateUserRequest(BaseModel):
    """Register a user with this service."""

    user_id: str = Field(..., min_length=1, description="Stable user identifier")
    tier: str = Field(default="Standard", description="Tier name (Standard, Legend, VIP)")


class SetTierRequest(BaseModel):
    tier: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    user_id: str
    tier: str
    created_at: str


class UsageInfo(BaseModel):
    """Usage for one resource kind in the current period."""

    tier: str
    kind: str
    limit: Optional[int] = Field(default=None, description="None means unlimited")
    used: int
    remaining: Optional[int] = Field(default=None, description="None means unlimited")
    is_unlimited: bool
    can_consume: bool
    total: int
    period_start: str
    period_end: str

    @classmethod
    def from_snapshot(cls, snapshot: UsageSnapshot) -> "UsageInfo":
        return cls(**snapshot.to_dict())


class ConsumeResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    message: str = ""
    usage: UsageInfo


class BehaviorData(BaseModel):
    """Aggregated behavioral statistics an insight is generated from."""

    total_messages: int = Field(default=0, ge=0)
    patterns: Dict[str, int] = Field(default_factory=dict)
    days_since_first_chat: Optional[int] = Field(default=None, ge=0)
    most_active_time_of_day: Optional[str] = None
    communication_style: Optional[str] = None


class InsightRequest(BaseModel):
    data: BehaviorData = Field(default_factory=BehaviorData)
    force: bool = False


class InsightResponse(BaseModel):
    status: str
    category: str
    insight: str = ""
    confidence: float = 0.0
    is_fallback: bool = False
    reason: str = ""
    remaining_seconds: int = 0
    remaining_formatted: str = "Ready"
    generated_at: Optional[str] = None


class ModelSelectionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    query_type: str = Field(default="conversational")
    force_default: bool = False


class ModelSelectionResponse(BaseModel):
    model: str
    reason: str
    message: str
    usage: Optional[UsageInfo] = None


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
    usage: Optional[UsageInfo] = None
