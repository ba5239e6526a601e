from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.domain.errors import AuthenticationError, FicError, RemoteNotFoundError
from src.domain.resources import ResourceAction, ResourceCategory, resource_spec
from src.observability import incr_metric, log_event
from src.providers.fic.client import fetch_resource
from src.services import accounts, event_ledger
from src.services.publisher import account_channel, publish_event


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _delete_local(account_id: str, category: ResourceCategory, resource_id: str) -> int:
    spec = resource_spec(category)
    result = (
        supabase.table(spec.table)
        .delete()
        .eq("fic_account_id", account_id)
        .eq(spec.id_column, resource_id)
        .execute()
    )
    return len(result.data or [])


def _upsert_local(account_id: str, category: ResourceCategory, resource_id: str, data: dict[str, Any]) -> None:
    spec = resource_spec(category)
    row = {
        "fic_account_id": account_id,
        spec.id_column: resource_id,
        **spec.snapshot(data),
        "synced_at": _now_iso(),
    }
    supabase.table(spec.table).upsert(row, on_conflict=f"fic_account_id,{spec.id_column}").execute()


def apply_resource_change(
    account: dict[str, Any],
    category: ResourceCategory,
    resource_id: str,
    action: ResourceAction,
) -> str:
    """Bring the local snapshot of one resource in line with the remote.

    Always re-fetches current state instead of applying the event as a delta,
    so out-of-order deliveries converge on the latest remote version.
    """
    account_id = str(account["id"])
    # Delete events are checked too: a late delete must not wipe a recreated resource.
    try:
        data = fetch_resource(
            accounts.credentials_for(account),
            category,
            resource_id,
            **accounts.api_options(),
        )
    except RemoteNotFoundError:
        _delete_local(account_id, category, resource_id)
        return "deleted"
    if action == ResourceAction.DELETED:
        log_event(
            "fic_resource_delete_superseded",
            level=logging.WARNING,
            account_id=account_id,
            resource_type=category.value,
            resource_id=resource_id,
        )
    _upsert_local(account_id, category, resource_id, data)
    return "upserted"


def sync_resource(
    *,
    account_id: str,
    category: ResourceCategory,
    resource_id: str,
    action: ResourceAction,
    ledger_entry_id: str | None = None,
    attempt: int = 1,
    request_id: str | None = None,
) -> str:
    """Background task dispatched once per accepted resource id."""
    account = accounts.get_account(account_id)
    if not account:
        error = f"FIC account {account_id} not found"
        if ledger_entry_id:
            event_ledger.mark_failed(ledger_entry_id, error, attempts=attempt)
        incr_metric("fic.sync.failed", resource_type=category.value, reason="account_missing")
        log_event(
            "fic_resource_sync_failed",
            level=logging.ERROR,
            request_id=request_id,
            account_id=account_id,
            resource_type=category.value,
            resource_id=resource_id,
            action=action.value,
            error=error,
        )
        return "failed"

    try:
        result = apply_resource_change(account, category, resource_id, action)
    except FicError as exc:
        if isinstance(exc, AuthenticationError):
            accounts.mark_needs_refresh(account_id, str(exc), request_id=request_id)
        if ledger_entry_id:
            event_ledger.mark_failed(
                ledger_entry_id,
                f"[{exc.category}] {type(exc).__name__}: {exc}",
                attempts=attempt,
            )
        incr_metric("fic.sync.failed", resource_type=category.value, reason=exc.category)
        log_event(
            "fic_resource_sync_failed",
            level=logging.WARNING if exc.retryable else logging.ERROR,
            request_id=request_id,
            account_id=account_id,
            resource_type=category.value,
            resource_id=resource_id,
            action=action.value,
            error_type=type(exc).__name__,
            retryable=exc.retryable,
            error=str(exc),
        )
        return "failed"
    except Exception as exc:
        if ledger_entry_id:
            event_ledger.mark_failed(ledger_entry_id, f"{type(exc).__name__}: {exc}", attempts=attempt)
        incr_metric("fic.sync.failed", resource_type=category.value, reason="internal")
        log_event(
            "fic_resource_sync_failed",
            level=logging.ERROR,
            request_id=request_id,
            account_id=account_id,
            resource_type=category.value,
            resource_id=resource_id,
            action=action.value,
            error=str(exc),
        )
        return "failed"

    if ledger_entry_id and not event_ledger.mark_processed(ledger_entry_id):
        log_event(
            "fic_ledger_transition_skipped",
            level=logging.WARNING,
            request_id=request_id,
            ledger_entry_id=ledger_entry_id,
            reason="entry_not_pending",
        )
    incr_metric("fic.sync.completed", resource_type=category.value, action=action.value)
    log_event(
        "fic_resource_synced",
        request_id=request_id,
        account_id=account_id,
        resource_type=category.value,
        resource_id=resource_id,
        action=action.value,
        result=result,
    )
    publish_event(
        account_channel("sync", account_id),
        "resource.synced",
        {
            "resource_type": category.value,
            "fic_id": resource_id,
            "account_id": account_id,
            "action": action.value,
            "result": result,
            "synced_at": _now_iso(),
        },
        request_id=request_id,
    )
    return result
