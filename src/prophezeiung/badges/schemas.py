"""Pydantic response models for badge endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BadgeResponse(BaseModel):
    key: str
    name: str
    description: str
    requirement: str
    category: str
    rarity: str
    threshold: int | None = None


class AllBadgesResponse(BaseModel):
    badges: list[BadgeResponse]


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None


class EarnedBadgeResponse(BaseModel):
    badge: BadgeResponse
    earned_at: datetime


class UserBadgesResponse(BaseModel):
    user_id: str
    badges: list[EarnedBadgeResponse]
    total_earned: int


class AwardedBadgeResponse(BaseModel):
    """Hall of fame entry."""

    badge: BadgeResponse
    first_achiever: UserSummary
    first_achieved_at: datetime
    total_achievers: int


class AwardedBadgesResponse(BaseModel):
    badges: list[AwardedBadgeResponse]


class BadgeHolderResponse(BaseModel):
    user: UserSummary
    earned_at: datetime


class BadgeHoldersResponse(BaseModel):
    badge: BadgeResponse
    holders: list[BadgeHolderResponse]
    total: int


class EvaluationResponse(BaseModel):
    user_id: str
    newly_awarded: list[EarnedBadgeResponse]


class ManualAwardRequest(BaseModel):
    user_id: str = Field(min_length=1)
    badge_key: str = Field(min_length=1)


class ManualAwardResponse(BaseModel):
    user_id: str
    badge: BadgeResponse
    earned_at: datetime
    is_new: bool


class RoundAwardResponse(BaseModel):
    round_id: str
    awarded: int
    newly_awarded: list[dict[str, str]]
