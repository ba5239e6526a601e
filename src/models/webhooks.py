from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class WebhookAcceptedResponse(BaseModel):
    status: Literal["accepted", "ignored"]
    message: str
    event_type: str
    event_key: str
    queued: int = 0
    duplicates: int = 0


class EventLedgerListItem(BaseModel):
    id: str
    fic_account_id: str
    event_type: str
    resource_type: str
    fic_resource_id: str
    event_key: str
    status: Literal["pending", "processed", "failed"]
    occurred_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    processed_at: datetime | None = None
    created_at: datetime | None = None


class EventLedgerDetailResponse(EventLedgerListItem):
    payload: dict[str, Any] = {}


class EventReplayResponse(BaseModel):
    id: str
    status: Literal["queued", "skipped"]
    reason: str | None = None


class EventReplayFailedRequest(BaseModel):
    account_id: str | None = None
    event_type: str | None = None
    max_events: int = Field(default=50, ge=1, le=1000)
    dry_run: bool = False


class EventReplayFailedResponse(BaseModel):
    dry_run: bool
    matched: int
    queued: int
    skipped: int
    results: list[EventReplayResponse] = []
