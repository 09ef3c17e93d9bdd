"""Pydantic schemas for the reputation endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReputationMetricsItem(BaseModel):
    helpful_posts: int
    total_posts: int
    violations: int
    warnings: int
    consistency: float
    engagement: float
    marketplace_rating: float


class PerksItem(BaseModel):
    fast_posting: bool
    highlight_badge: bool
    visibility_boost: bool
    priority_support: bool


class RestrictionsItem(BaseModel):
    cooldown_until: Optional[datetime] = None
    posting_limited: bool
    max_posts_per_hour: int


class HistoryItem(BaseModel):
    date: datetime
    score: float
    reason: str


class ReputationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    user_name: str
    score: float
    tier: str
    last_calculated: datetime
    metrics: ReputationMetricsItem
    perks: PerksItem
    restrictions: RestrictionsItem
    history: list[HistoryItem]
    visibility_public: bool
    manual_override_active: bool
    manual_override_by: Optional[str] = None
    manual_override_reason: Optional[str] = None
    manual_override_at: Optional[datetime] = None


class RecomputeResponse(BaseModel):
    user_id: str
    score: float


class RecomputeAllResponse(BaseModel):
    updated: int
    failed: int


class OverrideRequest(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    override_by: str = Field(min_length=1, max_length=128)
    reason: str = Field(min_length=1, max_length=1000)


class VisibilityRequest(BaseModel):
    visibility_public: bool
