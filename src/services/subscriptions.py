from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from src.config import settings
from src.domain.errors import (
    AuthenticationError,
    FicError,
    ValidationError,
    VerificationCooldownError,
    VerificationExhaustedError,
)
from src.domain.event_groups import build_webhook_url, resolve_event_group, webhook_path
from src.domain.lifecycle import parse_timestamp
from src.models.reconciliation import RenewalItem, RenewalRunResponse
from src.observability import incr_metric, log_event
from src.providers.fic.client import (
    create_subscription_raw,
    delete_subscription as delete_remote_subscription,
    renew_subscription,
    verify_subscription,
)
from src.services import accounts, subscription_store

VERIFICATION_METHODS = {"header", "query"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def validate_subscription_request(
    *,
    account_id: str,
    types: list[str],
    sink: str | None,
    verification_method: str,
    event_group: str | None,
) -> tuple[str, str]:
    """Validate before any remote call; returns (event_group, sink)."""
    cleaned = [item.strip() for item in types if isinstance(item, str) and item.strip()]
    if not cleaned or len(cleaned) != len(types):
        raise ValidationError("At least one non-empty event type is required")
    if verification_method not in VERIFICATION_METHODS:
        raise ValidationError("verification_method must be 'header' or 'query'")

    group = (event_group or "").strip() or resolve_event_group(cleaned[0])
    target = (sink or "").strip() or build_webhook_url(settings.app_base_url, account_id, group)
    if not target.lower().startswith("https://"):
        raise ValidationError("Webhook sink must be an https:// URL")
    expected_path = webhook_path(account_id, group)
    if expected_path not in target:
        raise ValidationError(f"Webhook sink must contain {expected_path}")
    return group, target


def create_subscription(
    account: dict[str, Any],
    *,
    types: list[str],
    sink: str | None = None,
    verification_method: str = "header",
    event_group: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    account_id = str(account["id"])
    group, target = validate_subscription_request(
        account_id=account_id,
        types=types,
        sink=sink,
        verification_method=verification_method,
        event_group=event_group,
    )
    types = [item.strip() for item in types]

    try:
        created = create_subscription_raw(
            accounts.credentials_for(account),
            sink=target,
            types=types,
            verification_method=verification_method,
            **accounts.api_options(),
        )
    except AuthenticationError as exc:
        accounts.mark_needs_refresh(account_id, str(exc), request_id=request_id)
        raise

    row = subscription_store.upsert_by_remote_id(
        {
            "fic_account_id": account_id,
            "fic_subscription_id": created["id"],
            "event_group": group,
            "event_types": created["types"] or types,
            "sink": created["sink"] or target,
            "verified": created["verified"],
            "is_active": True,
            "verification_method": verification_method,
            "webhook_secret": created.get("secret"),
            "expires_at": created.get("expires_at"),
            "verification_attempts": 0,
            "last_verification_attempt_at": None,
        }
    )
    incr_metric("fic.subscriptions.created", event_group=group)
    log_event(
        "fic_subscription_created",
        request_id=request_id,
        account_id=account_id,
        remote_id=created["id"],
        event_group=group,
        types=types,
        verified=created["verified"],
        warnings=created.get("warnings") or [],
    )
    row = dict(row)
    row["warnings"] = created.get("warnings") or []
    return row


def delete_subscription(
    subscription: dict[str, Any],
    account: dict[str, Any],
    *,
    request_id: str | None = None,
) -> str:
    """Delete remotely, then locally; a remote 404/410 counts as already gone."""
    remote_id = str(subscription["fic_subscription_id"])
    try:
        remote_result = delete_remote_subscription(
            accounts.credentials_for(account),
            remote_id,
            **accounts.api_options(),
        )
    except AuthenticationError as exc:
        accounts.mark_needs_refresh(str(account["id"]), str(exc), request_id=request_id)
        raise
    if remote_result == "already_deleted":
        log_event(
            "fic_subscription_already_deleted",
            level=logging.WARNING,
            request_id=request_id,
            account_id=account["id"],
            remote_id=remote_id,
        )
    subscription_store.delete_by_remote_id(remote_id)
    incr_metric("fic.subscriptions.deleted")
    log_event(
        "fic_subscription_deleted",
        request_id=request_id,
        account_id=account["id"],
        remote_id=remote_id,
        remote_result=remote_result,
    )
    return remote_result


def retry_verification(
    subscription: dict[str, Any],
    account: dict[str, Any],
    *,
    now: datetime | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Ask the remote to re-run the verification handshake.

    The remote allows a limited number of attempts spaced at least a few
    minutes apart; once they are used up the only way forward is recreating
    the subscription.
    """
    current = now or _now_utc()
    max_attempts = settings.fic_verification_max_attempts
    attempts = int(subscription.get("verification_attempts") or 0)
    if subscription.get("verified"):
        return subscription
    if attempts >= max_attempts:
        raise VerificationExhaustedError(
            f"Verification attempts exhausted ({attempts}/{max_attempts}); delete and recreate the subscription"
        )

    min_interval = timedelta(minutes=settings.fic_verification_retry_min_interval_minutes)
    last_attempt = parse_timestamp(subscription.get("last_verification_attempt_at"))
    if last_attempt is not None and current - last_attempt < min_interval:
        wait_seconds = int((last_attempt + min_interval - current).total_seconds()) + 1
        raise VerificationCooldownError(
            f"Verification was retried less than {settings.fic_verification_retry_min_interval_minutes} minutes ago",
            retry_after=wait_seconds,
        )

    remote_id = str(subscription["fic_subscription_id"])
    attempts += 1
    try:
        result = verify_subscription(
            accounts.credentials_for(account),
            remote_id,
            **accounts.api_options(),
        )
    except FicError as exc:
        if isinstance(exc, AuthenticationError):
            accounts.mark_needs_refresh(str(account["id"]), str(exc), request_id=request_id)
        else:
            # The attempt reached the remote (or may have); it still counts.
            subscription_store.update_subscription(
                subscription["id"],
                {
                    "verification_attempts": attempts,
                    "last_verification_attempt_at": current.isoformat(),
                },
            )
        incr_metric("fic.subscriptions.verification_retry_failed", category=exc.category)
        raise

    fields: dict[str, Any] = {
        "verification_attempts": attempts,
        "last_verification_attempt_at": current.isoformat(),
    }
    if "verified" in result:
        fields["verified"] = bool(result["verified"])
    updated = subscription_store.update_subscription(subscription["id"], fields) or {**subscription, **fields}
    incr_metric("fic.subscriptions.verification_retried")
    log_event(
        "fic_subscription_verification_retried",
        request_id=request_id,
        account_id=account["id"],
        remote_id=remote_id,
        attempts=attempts,
        verified=fields.get("verified"),
    )
    return updated


def renew_expiring_subscriptions(
    *,
    lead_days: int | None = None,
    now: datetime | None = None,
    dry_run: bool = False,
    request_id: str | None = None,
) -> RenewalRunResponse:
    """Renew active subscriptions whose expiry falls inside the lead window.

    ``expires_at`` exactly on the cutoff is renewed; rows without an expiry are
    treated as non-expiring; rows already expired are skipped with a warning.
    """
    started_at = _now_utc()
    current = now or started_at
    window_days = settings.fic_subscription_renewal_lead_days if lead_days is None else lead_days
    cutoff = current + timedelta(days=window_days)

    items: list[RenewalItem] = []
    account_cache: dict[str, dict[str, Any] | None] = {}
    for row in subscription_store.list_renewal_candidates(cutoff):
        account_id = str(row.get("fic_account_id"))
        remote_id = str(row.get("fic_subscription_id"))
        expires_at = parse_timestamp(row.get("expires_at"))
        base = {
            "subscription_id": str(row["id"]),
            "account_id": account_id,
            "remote_id": remote_id,
            "expires_at": expires_at,
        }
        if expires_at is not None and expires_at < current:
            items.append(RenewalItem(**base, result="skipped_expired"))
            incr_metric("fic.renewals.skipped_expired")
            log_event(
                "fic_subscription_already_expired",
                level=logging.WARNING,
                request_id=request_id,
                account_id=account_id,
                remote_id=remote_id,
                expires_at=expires_at,
            )
            continue
        if dry_run:
            items.append(RenewalItem(**base, result="would_renew"))
            continue

        if account_id not in account_cache:
            account_cache[account_id] = accounts.get_account(account_id)
        account = account_cache[account_id]
        if not account:
            items.append(RenewalItem(**base, result="failed", error="account not found"))
            continue

        try:
            renewed = renew_subscription(
                accounts.credentials_for(account),
                remote_id,
                sink=row.get("sink") or build_webhook_url(settings.app_base_url, account_id, row.get("event_group") or "default"),
                types=list(row.get("event_types") or []),
                verification_method=row.get("verification_method") or "header",
                **accounts.api_options(),
            )
        except FicError as exc:
            if isinstance(exc, AuthenticationError):
                accounts.mark_needs_refresh(account_id, str(exc), request_id=request_id)
            items.append(RenewalItem(**base, result="failed", error=f"[{exc.category}] {exc}"))
            incr_metric("fic.renewals.failed", category=exc.category)
            log_event(
                "fic_subscription_renewal_failed",
                level=logging.ERROR,
                request_id=request_id,
                account_id=account_id,
                remote_id=remote_id,
                error=str(exc),
            )
            continue

        fields: dict[str, Any] = {"fic_subscription_id": renewed["id"] or remote_id}
        if renewed.get("secret"):
            fields["webhook_secret"] = renewed["secret"]
        if renewed.get("expires_at"):
            fields["expires_at"] = renewed["expires_at"]
        try:
            subscription_store.update_subscription(row["id"], fields)
        except Exception as exc:
            items.append(RenewalItem(**base, result="failed", error=f"local update failed: {exc}"))
            log_event(
                "fic_subscription_renewal_store_failed",
                level=logging.ERROR,
                request_id=request_id,
                account_id=account_id,
                remote_id=remote_id,
                error=str(exc),
            )
            continue
        items.append(
            RenewalItem(
                **base,
                result="renewed",
                new_remote_id=fields["fic_subscription_id"],
                new_expires_at=parse_timestamp(renewed.get("expires_at")),
            )
        )
        incr_metric("fic.renewals.renewed")
        log_event(
            "fic_subscription_renewed",
            request_id=request_id,
            account_id=account_id,
            remote_id=remote_id,
            new_remote_id=fields["fic_subscription_id"],
            expires_at=renewed.get("expires_at"),
        )

    response = RenewalRunResponse(
        dry_run=dry_run,
        lead_days=window_days,
        cutoff=cutoff,
        started_at=started_at,
        finished_at=_now_utc(),
        renewed=sum(1 for item in items if item.result in {"renewed", "would_renew"}),
        skipped_expired=sum(1 for item in items if item.result == "skipped_expired"),
        failed=sum(1 for item in items if item.result == "failed"),
        items=items,
    )
    log_event(
        "fic_renewal_sweep_completed",
        request_id=request_id,
        dry_run=dry_run,
        lead_days=window_days,
        renewed=response.renewed,
        skipped_expired=response.skipped_expired,
        failed=response.failed,
    )
    return response
