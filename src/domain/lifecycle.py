from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


class SubscriptionState(str, Enum):
    UNVERIFIED = "unverified"
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    INACTIVE = "inactive"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime).

    Absent or malformed input yields ``None``; naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def subscription_state(
    row: dict[str, Any],
    *,
    now: datetime | None = None,
    lead_days: int = 15,
) -> SubscriptionState:
    if not row.get("is_active", True):
        return SubscriptionState.INACTIVE
    if not row.get("verified"):
        return SubscriptionState.UNVERIFIED
    expires_at = parse_timestamp(row.get("expires_at"))
    if expires_at is None:
        return SubscriptionState.ACTIVE
    current = now or datetime.now(timezone.utc)
    if expires_at < current:
        return SubscriptionState.EXPIRED
    if expires_at <= current + timedelta(days=lead_days):
        return SubscriptionState.EXPIRING
    return SubscriptionState.ACTIVE
