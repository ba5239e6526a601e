from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.config import settings
from src.db import supabase
from src.observability import incr_metric, log_event
from src.providers.fic.client import FicCredentials

_ACCOUNT_FIELDS = "id, name, company_id, company_name, access_token, token_expires_at, status, status_note"


def get_account(account_id: str | int) -> dict[str, Any] | None:
    result = supabase.table("fic_accounts").select(_ACCOUNT_FIELDS).eq("id", account_id).execute()
    if not result.data:
        return None
    return result.data[0]


def list_active_accounts() -> list[dict[str, Any]]:
    result = supabase.table("fic_accounts").select(_ACCOUNT_FIELDS).eq("status", "active").execute()
    return sorted(result.data or [], key=lambda row: str(row.get("id")))


def credentials_for(account: dict[str, Any]) -> FicCredentials:
    return FicCredentials.from_account(account)


def api_options() -> dict[str, Any]:
    return {
        "base_url": settings.fic_api_base_url,
        "timeout_seconds": settings.fic_api_timeout_seconds,
    }


def mark_needs_refresh(account_id: str | int, note: str, *, request_id: str | None = None) -> None:
    """Flag an account whose token the remote API rejected; token refresh happens elsewhere."""
    try:
        supabase.table("fic_accounts").update(
            {
                "status": "needs_refresh",
                "status_note": note[:500],
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        ).eq("id", account_id).execute()
    except Exception as exc:
        log_event(
            "fic_account_status_update_failed",
            level=logging.WARNING,
            request_id=request_id,
            account_id=account_id,
            error=str(exc),
        )
        return
    incr_metric("fic.accounts.needs_refresh")
    log_event(
        "fic_account_needs_refresh",
        level=logging.WARNING,
        request_id=request_id,
        account_id=account_id,
        note=note,
    )
