from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.domain.lifecycle import SubscriptionState


class SubscriptionCreateRequest(BaseModel):
    account_id: str
    types: list[str] = Field(min_length=1)
    sink: str | None = None
    verification_method: Literal["header", "query"] = "header"
    event_group: str | None = None


class SubscriptionResponse(BaseModel):
    id: str
    fic_account_id: str
    fic_subscription_id: str
    event_group: str
    event_types: list[str] = []
    sink: str | None = None
    is_active: bool
    verified: bool
    verification_method: str | None = None
    expires_at: datetime | None = None
    verification_attempts: int = 0
    last_verification_attempt_at: datetime | None = None
    state: SubscriptionState
    has_secret: bool = False
    warnings: list[str] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriptionDeleteResponse(BaseModel):
    subscription_id: str
    fic_subscription_id: str
    remote_result: Literal["deleted", "already_deleted"]


class VerificationRetryResponse(BaseModel):
    subscription_id: str
    fic_subscription_id: str
    verified: bool
    verification_attempts: int
    attempts_remaining: int


class SubscriptionDiagnosis(BaseModel):
    remote_id: str | None
    sink: str | None = None
    verified: bool
    types: list[str] = []
    url_account_id: str | None = None
    url_group: str | None = None
    types_group: str | None = None
    effective_group: str
    group_source: Literal["types", "url", "default"]
    url_matches_pattern: bool
    group_discrepancy: bool
    misrouted: bool
    local_subscription_id: str | None = None
    local_group: str | None = None
    state: SubscriptionState | None = None


class AccountDiagnosisResponse(BaseModel):
    account_id: str
    company_id: str | None = None
    remote_count: int
    local_count: int
    local_only: list[str] = []
    subscriptions: list[SubscriptionDiagnosis] = []
