from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.domain.resources import ResourceCategory
from src.observability import incr_metric, log_event

TABLE = "fic_events"

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"

OUTCOME_CREATED = "created"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_RETRY = "retry"
OUTCOME_UNRECORDED = "unrecorded"


@dataclass
class LedgerOutcome:
    outcome: str
    entry_id: str | None = None
    status: str | None = None

    @property
    def should_dispatch(self) -> bool:
        return self.outcome != OUTCOME_DUPLICATE


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message or "23505" in message


def find_entry(
    *,
    account_id: str,
    event_type: str,
    category: ResourceCategory,
    resource_id: str,
    event_key: str,
) -> dict[str, Any] | None:
    result = (
        supabase.table(TABLE)
        .select("*")
        .eq("fic_account_id", account_id)
        .eq("event_type", event_type)
        .eq("resource_type", category.value)
        .eq("fic_resource_id", resource_id)
        .eq("event_key", event_key)
        .execute()
    )
    return result.data[0] if result.data else None


def get_entry(entry_id: str) -> dict[str, Any] | None:
    result = supabase.table(TABLE).select("*").eq("id", entry_id).execute()
    return result.data[0] if result.data else None


def list_entries(
    *,
    account_id: str | None = None,
    status_value: str | None = None,
    event_type: str | None = None,
) -> list[dict[str, Any]]:
    query = supabase.table(TABLE).select("*")
    if account_id:
        query = query.eq("fic_account_id", account_id)
    if status_value:
        query = query.eq("status", status_value)
    if event_type:
        query = query.eq("event_type", event_type)
    rows = query.execute().data or []
    return sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)


def record_pending(
    *,
    account_id: str,
    event_type: str,
    category: ResourceCategory,
    resource_id: str,
    event_key: str,
    occurred_at: str | None,
    payload: dict[str, Any],
    request_id: str | None = None,
) -> LedgerOutcome:
    """Create the pending entry for one (event, resource id) delivery.

    Pending or processed entries for the same delivery are duplicates; a failed
    one is put back to pending so the redelivery gets another attempt. Storage
    errors are logged and reported as ``unrecorded`` so the caller can still
    acknowledge the delivery.
    """
    row = {
        "fic_account_id": account_id,
        "event_type": event_type,
        "resource_type": category.value,
        "fic_resource_id": resource_id,
        "event_key": event_key,
        "occurred_at": occurred_at,
        "status": STATUS_PENDING,
        "payload": payload,
        "last_error": None,
        "attempts": 0,
    }
    try:
        result = supabase.table(TABLE).insert(row).execute()
        entry = result.data[0] if result.data else {}
        return LedgerOutcome(outcome=OUTCOME_CREATED, entry_id=entry.get("id"), status=STATUS_PENDING)
    except Exception as exc:
        if not _is_unique_violation(exc):
            incr_metric("fic.ledger.write_failed")
            log_event(
                "fic_ledger_write_failed",
                level=logging.ERROR,
                request_id=request_id,
                account_id=account_id,
                event_type=event_type,
                resource_type=category.value,
                resource_id=resource_id,
                error=str(exc),
            )
            return LedgerOutcome(outcome=OUTCOME_UNRECORDED)

    try:
        existing = find_entry(
            account_id=account_id,
            event_type=event_type,
            category=category,
            resource_id=resource_id,
            event_key=event_key,
        )
        if existing and existing.get("status") == STATUS_FAILED:
            reset = (
                supabase.table(TABLE)
                .update({"status": STATUS_PENDING, "updated_at": _now_iso()})
                .eq("id", existing["id"])
                .eq("status", STATUS_FAILED)
                .execute()
            )
            if reset.data:
                return LedgerOutcome(outcome=OUTCOME_RETRY, entry_id=existing["id"], status=STATUS_PENDING)
    except Exception as exc:
        log_event(
            "fic_ledger_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            account_id=account_id,
            event_type=event_type,
            resource_id=resource_id,
            error=str(exc),
        )
        return LedgerOutcome(outcome=OUTCOME_DUPLICATE)

    return LedgerOutcome(
        outcome=OUTCOME_DUPLICATE,
        entry_id=existing.get("id") if existing else None,
        status=existing.get("status") if existing else None,
    )


def _transition(entry_id: str, fields: dict[str, Any]) -> bool:
    result = (
        supabase.table(TABLE)
        .update(fields)
        .eq("id", entry_id)
        .eq("status", STATUS_PENDING)
        .execute()
    )
    return bool(result.data)


def mark_processed(entry_id: str) -> bool:
    """pending -> processed; False when the entry already left pending."""
    return _transition(
        entry_id,
        {
            "status": STATUS_PROCESSED,
            "processed_at": _now_iso(),
            "last_error": None,
            "updated_at": _now_iso(),
        },
    )


def mark_failed(entry_id: str, error: str, *, attempts: int | None = None) -> bool:
    fields: dict[str, Any] = {
        "status": STATUS_FAILED,
        "last_error": error[:1000],
        "updated_at": _now_iso(),
    }
    if attempts is not None:
        fields["attempts"] = attempts
    return _transition(entry_id, fields)


def reset_for_replay(entry_id: str) -> bool:
    """failed -> pending, for an operator replay."""
    result = (
        supabase.table(TABLE)
        .update({"status": STATUS_PENDING, "updated_at": _now_iso()})
        .eq("id", entry_id)
        .eq("status", STATUS_FAILED)
        .execute()
    )
    return bool(result.data)
