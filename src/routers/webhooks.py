from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Mapping

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.domain.errors import SignatureVerificationError, WebhookMisconfiguredError
from src.domain.event_groups import WEBHOOK_SYSTEM
from src.domain.resources import ResourceCategory, resolve_resource_event
from src.models.webhooks import (
    EventLedgerDetailResponse,
    EventLedgerListItem,
    EventReplayFailedRequest,
    EventReplayFailedResponse,
    EventReplayResponse,
    WebhookAcceptedResponse,
)
from src.observability import incr_metric, log_event
from src.services import event_ledger, resource_sync, subscription_store
from src.services.publisher import account_channel, publish_event
from src.services.signatures import (
    extract_verification_challenge,
    verify_bearer_token,
    verify_notification_signature,
)


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

_CLOUDEVENT_ATTRIBUTES = ("type", "time", "subject", "id", "source", "specversion")
_STRUCTURED_CONTENT_TYPE = "application/cloudevents+json"
_JWT_MODES = {"advisory", "enforce"}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _require_supported_system(system: str) -> None:
    if system != WEBHOOK_SYSTEM:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unsupported webhook system")


def _parse_cloudevent(headers: Mapping[str, str], payload: dict[str, Any]) -> dict[str, Any]:
    """Read CloudEvents attributes in structured (body) or binary (ce-* headers) mode."""
    content_type = (headers.get("content-type") or "").lower()
    if _STRUCTURED_CONTENT_TYPE in content_type:
        return {name: payload.get(name) for name in _CLOUDEVENT_ATTRIBUTES}
    return {name: headers.get(f"ce-{name}") or payload.get(name) for name in _CLOUDEVENT_ATTRIBUTES}


def _extract_resource_ids(payload: dict[str, Any]) -> list[str]:
    data = payload.get("data")
    if not isinstance(data, dict):
        return []
    ids = data.get("ids")
    if not isinstance(ids, list):
        return []
    seen: list[str] = []
    for raw in ids:
        if raw is None or isinstance(raw, (dict, list, bool)):
            continue
        value = str(raw).strip()
        if value and value not in seen:
            seen.append(value)
    return seen


def _compute_event_key(envelope: dict[str, Any], raw_body: bytes) -> str:
    explicit = envelope.get("id")
    if explicit:
        return str(explicit)
    return hashlib.sha256(raw_body).hexdigest()


def _authenticate_or_raise(
    *,
    raw_body: bytes,
    signature: str | None,
    subscriptions: list[dict[str, Any]],
) -> dict[str, Any]:
    """Return the subscription whose secret signed the body.

    Several subscriptions may share a routing group, so each configured secret
    is tried; rows without a secret cannot authenticate anything.
    """
    candidates = [row for row in subscriptions if row.get("webhook_secret")]
    if not candidates:
        raise WebhookMisconfiguredError("No webhook secret configured for this subscription group")
    last_error: SignatureVerificationError | None = None
    for row in candidates:
        try:
            verify_notification_signature(raw_body, signature, row["webhook_secret"])
            return row
        except SignatureVerificationError as exc:
            last_error = exc
    assert last_error is not None
    raise last_error


def _jwt_mode() -> str:
    mode = (settings.fic_webhook_jwt_mode or "advisory").strip().lower()
    return mode if mode in _JWT_MODES else "advisory"


# --- Event ledger administration ---

@router.get("/events", response_model=list[EventLedgerListItem])
async def list_webhook_events(
    account_id: str | None = None,
    status_value: str | None = None,
    event_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    if status_value and status_value not in {"pending", "processed", "failed"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported status filter")
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    rows = event_ledger.list_entries(account_id=account_id, status_value=status_value, event_type=event_type)
    result_rows = rows[bounded_offset:bounded_offset + bounded_limit]
    log_event(
        "webhook_events_listed",
        account_id=account_id,
        status_value=status_value,
        event_type=event_type,
        returned=len(result_rows),
        limit=bounded_limit,
        offset=bounded_offset,
    )
    return result_rows


@router.post("/events/replay-failed", response_model=EventReplayFailedResponse)
async def replay_failed_webhook_events(
    data: EventReplayFailedRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    req_id = _request_id(request)
    max_events = min(data.max_events, settings.fic_webhook_replay_max_events_per_run)
    rows = event_ledger.list_entries(
        account_id=data.account_id,
        status_value=event_ledger.STATUS_FAILED,
        event_type=data.event_type,
    )
    selected = list(reversed(rows))[:max_events]
    results: list[EventReplayResponse] = []
    for row in selected:
        if data.dry_run:
            results.append(EventReplayResponse(id=str(row["id"]), status="queued", reason="dry_run"))
            continue
        results.append(_replay_entry(row, background_tasks=background_tasks, request_id=req_id))
    queued = sum(1 for item in results if item.status == "queued")
    log_event(
        "webhook_events_replay_failed",
        request_id=req_id,
        account_id=data.account_id,
        event_type=data.event_type,
        matched=len(rows),
        queued=queued,
        dry_run=data.dry_run,
    )
    return EventReplayFailedResponse(
        dry_run=data.dry_run,
        matched=len(rows),
        queued=queued,
        skipped=len(results) - queued,
        results=results,
    )


@router.get("/events/{entry_id}", response_model=EventLedgerDetailResponse)
async def get_webhook_event(
    entry_id: str,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    row = event_ledger.get_entry(entry_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    return row


@router.post("/events/{entry_id}/replay", response_model=EventReplayResponse)
async def replay_webhook_event(
    entry_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    row = event_ledger.get_entry(entry_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    return _replay_entry(row, background_tasks=background_tasks, request_id=_request_id(request))


def _replay_entry(
    row: dict[str, Any],
    *,
    background_tasks: BackgroundTasks,
    request_id: str | None,
) -> EventReplayResponse:
    entry_id = str(row["id"])
    if row.get("status") != event_ledger.STATUS_FAILED:
        return EventReplayResponse(id=entry_id, status="skipped", reason=f"status={row.get('status')}")
    mapping = resolve_resource_event(row.get("event_type"))
    if mapping is None:
        return EventReplayResponse(id=entry_id, status="skipped", reason="unsupported_event_type")
    if not event_ledger.reset_for_replay(entry_id):
        return EventReplayResponse(id=entry_id, status="skipped", reason="status_changed")
    _, action = mapping
    background_tasks.add_task(
        resource_sync.sync_resource,
        account_id=str(row["fic_account_id"]),
        category=ResourceCategory(row["resource_type"]),
        resource_id=str(row["fic_resource_id"]),
        action=action,
        ledger_entry_id=entry_id,
        attempt=int(row.get("attempts") or 0) + 1,
        request_id=request_id,
    )
    incr_metric("webhook.events.replayed", resource_type=row.get("resource_type"))
    log_event(
        "webhook_event_replay_queued",
        request_id=request_id,
        ledger_entry_id=entry_id,
        account_id=row.get("fic_account_id"),
        event_type=row.get("event_type"),
        resource_id=row.get("fic_resource_id"),
    )
    return EventReplayResponse(id=entry_id, status="queued")


# --- Ingress ---

@router.get("/{system}/{account_id}/{group}")
async def answer_verification_challenge(
    system: str,
    account_id: str,
    group: str,
    request: Request,
):
    """Echo the remote's verification challenge. Stateless: no subscription lookup."""
    _require_supported_system(system)
    req_id = _request_id(request)
    challenge = extract_verification_challenge(request.headers, request.query_params)

    bearer = verify_bearer_token(
        request.headers.get("Authorization"),
        public_key_b64=settings.fic_webhook_public_key,
        issuer=settings.fic_webhook_jwt_issuer,
    )
    if bearer.present and not bearer.verified:
        incr_metric("webhook.verification.jwt_unverified", reason=(bearer.reason or "").split(":")[0])
        log_event(
            "webhook_verification_jwt_unverified",
            level=logging.WARNING,
            request_id=req_id,
            account_id=account_id,
            event_group=group,
            reason=bearer.reason,
        )

    if not challenge:
        incr_metric("webhook.verification.missing_challenge")
        log_event(
            "webhook_verification_missing_challenge",
            level=logging.WARNING,
            request_id=req_id,
            account_id=account_id,
            event_group=group,
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing verification challenge")

    incr_metric("webhook.verification.answered", event_group=group)
    log_event(
        "webhook_verification_answered",
        request_id=req_id,
        account_id=account_id,
        event_group=group,
        jwt_verified=bearer.verified,
    )
    return {"verification": challenge}


@router.post(
    "/{system}/{account_id}/{group}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=WebhookAcceptedResponse,
)
async def ingest_fic_webhook(
    system: str,
    account_id: str,
    group: str,
    request: Request,
    background_tasks: BackgroundTasks,
):
    _require_supported_system(system)
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", event_group=group)

    try:
        subscriptions = subscription_store.list_active_for_group(account_id, group)
    except Exception as exc:
        incr_metric("webhook.events.failed", reason="subscription_lookup")
        log_event(
            "webhook_subscription_lookup_failed",
            level=logging.ERROR,
            request_id=req_id,
            account_id=account_id,
            event_group=group,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook ingestion temporarily unavailable",
        ) from exc
    if not subscriptions:
        incr_metric("webhook.events.no_subscription", event_group=group)
        log_event(
            "webhook_no_active_subscription",
            request_id=req_id,
            account_id=account_id,
            event_group=group,
        )
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription for this webhook")

    signature = request.headers.get(settings.fic_webhook_signature_header)
    try:
        subscription = _authenticate_or_raise(raw_body=raw_body, signature=signature, subscriptions=subscriptions)
    except WebhookMisconfiguredError as exc:
        incr_metric("webhook.events.misconfigured", event_group=group)
        log_event(
            "webhook_subscription_misconfigured",
            level=logging.ERROR,
            request_id=req_id,
            account_id=account_id,
            event_group=group,
            subscription_count=len(subscriptions),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "type": "webhook_misconfigured",
                "message": str(exc),
            },
        ) from exc
    except SignatureVerificationError as exc:
        reason = "missing_signature" if not signature else "invalid_signature"
        incr_metric("webhook.events.signature_rejected", reason=reason)
        log_event(
            "webhook_signature_rejected",
            level=logging.WARNING,
            request_id=req_id,
            account_id=account_id,
            event_group=group,
            reason=reason,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "type": "webhook_signature_invalid",
                "reason": reason,
                "message": str(exc),
            },
        ) from exc

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    envelope = _parse_cloudevent(request.headers, payload)
    bearer = verify_bearer_token(
        request.headers.get("Authorization"),
        public_key_b64=settings.fic_webhook_public_key,
        issuer=settings.fic_webhook_jwt_issuer,
        expected_jti=envelope.get("id"),
        expected_subject=envelope.get("subject"),
    )
    if not bearer.verified and (bearer.present or _jwt_mode() == "enforce"):
        log_event(
            "webhook_jwt_unverified",
            level=logging.WARNING,
            request_id=req_id,
            account_id=account_id,
            event_group=group,
            reason=bearer.reason,
            mode=_jwt_mode(),
        )
        if _jwt_mode() == "enforce":
            incr_metric("webhook.events.jwt_rejected")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "type": "webhook_jwt_invalid",
                    "reason": (bearer.reason or "").split(":")[0],
                    "message": "Webhook bearer token could not be verified",
                },
            )

    event_type = envelope.get("type")
    if not event_type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event type")
    resource_ids = _extract_resource_ids(payload)
    if not resource_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing or empty data.ids")

    event_key = _compute_event_key(envelope, raw_body)
    log_event(
        "webhook_received",
        request_id=req_id,
        account_id=account_id,
        event_group=group,
        event_type=event_type,
        event_key=event_key,
        subscription_id=subscription.get("fic_subscription_id"),
        resource_count=len(resource_ids),
    )

    mapping = resolve_resource_event(event_type)
    if mapping is None:
        incr_metric("webhook.events.ignored", event_group=group)
        log_event(
            "webhook_event_type_unsupported",
            request_id=req_id,
            account_id=account_id,
            event_type=event_type,
            event_key=event_key,
        )
        return WebhookAcceptedResponse(
            status="ignored",
            message="Event type not synchronized",
            event_type=event_type,
            event_key=event_key,
        )
    category, action = mapping

    queued = 0
    duplicates = 0
    for resource_id in resource_ids:
        outcome = event_ledger.record_pending(
            account_id=account_id,
            event_type=event_type,
            category=category,
            resource_id=resource_id,
            event_key=event_key,
            occurred_at=envelope.get("time"),
            payload=payload,
            request_id=req_id,
        )
        if not outcome.should_dispatch:
            duplicates += 1
            incr_metric("webhook.events.duplicate", resource_type=category.value)
            log_event(
                "webhook_duplicate_ignored",
                request_id=req_id,
                account_id=account_id,
                event_type=event_type,
                event_key=event_key,
                resource_id=resource_id,
                ledger_status=outcome.status,
            )
            continue
        background_tasks.add_task(
            resource_sync.sync_resource,
            account_id=account_id,
            category=category,
            resource_id=resource_id,
            action=action,
            ledger_entry_id=outcome.entry_id,
            request_id=req_id,
        )
        queued += 1

    if queued:
        incr_metric("webhook.events.accepted", queued, resource_type=category.value)
        background_tasks.add_task(
            publish_event,
            account_channel("webhooks", account_id),
            "webhook.received",
            {
                "account_id": account_id,
                "event_group": group,
                "event_type": event_type,
                "ce_id": envelope.get("id"),
                "ce_time": envelope.get("time"),
                "ce_subject": envelope.get("subject"),
                "data": payload.get("data"),
            },
            request_id=req_id,
        )
    log_event(
        "webhook_accepted",
        request_id=req_id,
        account_id=account_id,
        event_type=event_type,
        event_key=event_key,
        queued=queued,
        duplicates=duplicates,
    )
    return WebhookAcceptedResponse(
        status="accepted",
        message="Webhook queued for processing",
        event_type=event_type,
        event_key=event_key,
        queued=queued,
        duplicates=duplicates,
    )
