from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.domain.lifecycle import parse_timestamp

TABLE = "fic_subscriptions"

# fic_subscription_id is the only natural key; several rows may share
# (fic_account_id, event_group).
NATURAL_KEY = "fic_subscription_id"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_subscription(subscription_id: str) -> dict[str, Any] | None:
    result = supabase.table(TABLE).select("*").eq("id", subscription_id).execute()
    return result.data[0] if result.data else None


def get_by_remote_id(remote_id: str) -> dict[str, Any] | None:
    result = supabase.table(TABLE).select("*").eq(NATURAL_KEY, str(remote_id)).execute()
    return result.data[0] if result.data else None


def list_for_account(account_id: str) -> list[dict[str, Any]]:
    result = supabase.table(TABLE).select("*").eq("fic_account_id", account_id).execute()
    return sorted(result.data or [], key=lambda row: (row.get("event_group") or "", row.get(NATURAL_KEY) or ""))


def list_all() -> list[dict[str, Any]]:
    result = supabase.table(TABLE).select("*").execute()
    return sorted(
        result.data or [],
        key=lambda row: (str(row.get("fic_account_id") or ""), row.get("event_group") or "", row.get(NATURAL_KEY) or ""),
    )


def list_active_for_group(account_id: str, event_group: str) -> list[dict[str, Any]]:
    result = (
        supabase.table(TABLE)
        .select("*")
        .eq("fic_account_id", account_id)
        .eq("event_group", event_group)
        .eq("is_active", True)
        .execute()
    )
    return result.data or []


def list_renewal_candidates(cutoff: datetime) -> list[dict[str, Any]]:
    """Active, verified rows whose expiry is set and at or before ``cutoff``.

    Rows already past expiry are included; the sweep decides what to do with them.
    """
    result = supabase.table(TABLE).select("*").eq("is_active", True).eq("verified", True).execute()
    candidates = []
    for row in result.data or []:
        expires_at = parse_timestamp(row.get("expires_at"))
        if expires_at is None:
            continue
        if expires_at <= cutoff:
            candidates.append(row)
    return sorted(candidates, key=lambda row: parse_timestamp(row.get("expires_at")))


def upsert_by_remote_id(row: dict[str, Any]) -> dict[str, Any]:
    """Insert or update atomically on ``fic_subscription_id``."""
    payload = dict(row)
    payload[NATURAL_KEY] = str(payload[NATURAL_KEY])
    payload["updated_at"] = _now_iso()
    result = supabase.table(TABLE).upsert(payload, on_conflict=NATURAL_KEY).execute()
    return result.data[0] if result.data else payload


def update_subscription(subscription_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
    payload = dict(fields)
    payload["updated_at"] = _now_iso()
    result = supabase.table(TABLE).update(payload).eq("id", subscription_id).execute()
    return result.data[0] if result.data else None


def delete_by_remote_id(remote_id: str) -> int:
    result = supabase.table(TABLE).delete().eq(NATURAL_KEY, str(remote_id)).execute()
    return len(result.data or [])


def deactivate(subscription_id: str) -> None:
    update_subscription(subscription_id, {"is_active": False})
