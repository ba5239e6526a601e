from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from src.config import settings
from src.observability import incr_metric, log_event


def account_channel(prefix: str, account_id: str | int) -> str:
    return f"{prefix}.account.{account_id}"


def publish_event(
    channel: str,
    event: str,
    payload: dict[str, Any],
    *,
    request_id: str | None = None,
) -> bool:
    """Hand one event to the real-time push relay.

    Fire-and-forget: failures are logged and counted, never raised.
    """
    publish_url = settings.realtime_publish_url
    if not publish_url:
        log_event(
            "realtime_publish_skipped",
            level=logging.DEBUG,
            request_id=request_id,
            channel=channel,
            event=event,
        )
        return False

    headers = {"Content-Type": "application/json"}
    if settings.realtime_publish_bearer_token:
        headers["Authorization"] = f"Bearer {settings.realtime_publish_bearer_token}"
    body = {
        "channel": channel,
        "event": event,
        "data": payload,
        "published_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        with httpx.Client(timeout=settings.realtime_publish_timeout_seconds) as client:
            response = client.post(publish_url, headers=headers, json=body)
    except httpx.HTTPError as exc:
        incr_metric("realtime.publish.failed", event=event)
        log_event(
            "realtime_publish_failed",
            level=logging.WARNING,
            request_id=request_id,
            channel=channel,
            event=event,
            error=str(exc),
        )
        return False
    if response.status_code >= 400:
        incr_metric("realtime.publish.failed", event=event)
        log_event(
            "realtime_publish_failed",
            level=logging.WARNING,
            request_id=request_id,
            channel=channel,
            event=event,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return False

    incr_metric("realtime.publish.sent", event=event)
    return True
