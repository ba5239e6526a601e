from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


ReconciliationAction = Literal[
    "matched_unchanged",
    "updated",
    "group_key_corrected",
    "newly_discovered",
    "misrouted_recreated",
    "misrouted_recreate_failed",
    "errored",
]


class ReconciliationRunRequest(BaseModel):
    account_id: str | None = None
    dry_run: bool = True


class ReconciliationItem(BaseModel):
    remote_id: str | None
    action: ReconciliationAction
    sink: str | None = None
    types: list[str] = []
    url_account_id: str | None = None
    url_group: str | None = None
    types_group: str | None = None
    effective_group: str
    group_source: Literal["types", "url", "default"]
    previous_group: str | None = None
    new_remote_id: str | None = None
    error: str | None = None


class AccountReconciliationReport(BaseModel):
    account_id: str
    company_id: str | None = None
    skipped: bool = False
    remote_count: int = 0
    matched_unchanged: int = 0
    updated: int = 0
    group_key_corrected: int = 0
    misrouted_recreated: int = 0
    newly_discovered: int = 0
    deactivated_missing: int = 0
    errored: int = 0
    items: list[ReconciliationItem] = []
    errors: list[str] = []


class ReconciliationRunResponse(BaseModel):
    dry_run: bool
    started_at: datetime
    finished_at: datetime
    accounts: list[AccountReconciliationReport]


class RenewalRunRequest(BaseModel):
    lead_days: int | None = Field(default=None, ge=0, le=90)
    dry_run: bool = False


class RenewalItem(BaseModel):
    subscription_id: str
    account_id: str
    remote_id: str
    expires_at: datetime | None = None
    result: Literal["renewed", "would_renew", "skipped_expired", "failed"]
    new_remote_id: str | None = None
    new_expires_at: datetime | None = None
    error: str | None = None


class RenewalRunResponse(BaseModel):
    dry_run: bool
    lead_days: int
    cutoff: datetime
    started_at: datetime
    finished_at: datetime
    renewed: int
    skipped_expired: int
    failed: int
    items: list[RenewalItem] = []
