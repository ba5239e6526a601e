from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from src.config import settings
from src.domain.errors import AuthenticationError, FicError
from src.domain.event_groups import (
    DEFAULT_EVENT_GROUP,
    build_webhook_url,
    parse_webhook_sink,
    types_group_key,
)
from src.domain.lifecycle import parse_timestamp, subscription_state
from src.models.reconciliation import (
    AccountReconciliationReport,
    ReconciliationItem,
    ReconciliationRunResponse,
)
from src.models.subscriptions import AccountDiagnosisResponse, SubscriptionDiagnosis
from src.observability import incr_metric, log_event
from src.providers.fic.client import (
    create_subscription_raw,
    delete_subscription as delete_remote_subscription,
    list_subscriptions as list_remote_subscriptions,
)
from src.services import accounts, subscription_store


_registry_lock = Lock()
_account_locks: dict[str, Lock] = {}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _account_lock(account_id: str) -> Lock:
    with _registry_lock:
        lock = _account_locks.get(account_id)
        if lock is None:
            lock = Lock()
            _account_locks[account_id] = lock
        return lock


@dataclass(frozen=True)
class SinkAnalysis:
    """Three-way view of one remote subscription: sink URL, registered types, local row."""

    remote_id: str | None
    sink: str | None
    verified: bool
    types: list[str]
    verification_method: str
    url_account_id: str | None
    url_group: str | None
    types_group: str | None
    effective_group: str
    group_source: str
    url_matches_pattern: bool
    group_discrepancy: bool
    misrouted: bool


def analyze_remote_subscription(account_id: str, remote: dict[str, Any]) -> SinkAnalysis:
    route = parse_webhook_sink(remote.get("sink"))
    url_account_id = route.account_id if route else None
    url_group = route.group if route else None
    types = list(remote.get("types") or [])
    types_group = types_group_key(types)

    # Registered types win: the remote expands group shorthand into concrete
    # types, so the group baked into the URL at creation time can go stale.
    if types_group:
        effective_group, group_source = types_group, "types"
    elif url_group:
        effective_group, group_source = url_group, "url"
    else:
        effective_group, group_source = DEFAULT_EVENT_GROUP, "default"

    return SinkAnalysis(
        remote_id=remote.get("id"),
        sink=remote.get("sink"),
        verified=bool(remote.get("verified")),
        types=types,
        verification_method=remote.get("verification_method") or "header",
        url_account_id=url_account_id,
        url_group=url_group,
        types_group=types_group,
        effective_group=effective_group,
        group_source=group_source,
        url_matches_pattern=route is not None,
        group_discrepancy=bool(types_group and url_group and types_group != url_group),
        misrouted=url_account_id is not None and url_account_id != str(account_id),
    )


def _item(analysis: SinkAnalysis, action: str, **extra: Any) -> ReconciliationItem:
    return ReconciliationItem(
        remote_id=analysis.remote_id,
        action=action,
        sink=analysis.sink,
        types=analysis.types,
        url_account_id=analysis.url_account_id,
        url_group=analysis.url_group,
        types_group=analysis.types_group,
        effective_group=analysis.effective_group,
        group_source=analysis.group_source,
        **extra,
    )


def _local_row(account_id: str, analysis: SinkAnalysis, remote: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {
        "fic_account_id": account_id,
        "fic_subscription_id": analysis.remote_id,
        "event_group": analysis.effective_group,
        "event_types": analysis.types,
        "sink": analysis.sink,
        "verified": analysis.verified,
        "is_active": True,
        "verification_method": analysis.verification_method,
        "expires_at": remote.get("expires_at"),
    }
    if remote.get("secret"):
        row["webhook_secret"] = remote["secret"]
    return row


def _row_differs(local: dict[str, Any], desired: dict[str, Any]) -> bool:
    for key in ("event_types", "sink", "verified", "is_active", "verification_method"):
        if local.get(key) != desired.get(key):
            return True
    if parse_timestamp(local.get("expires_at")) != parse_timestamp(desired.get("expires_at")):
        return True
    return False


def _recreate_misrouted(
    *,
    account: dict[str, Any],
    analysis: SinkAnalysis,
    report: AccountReconciliationReport,
    seen_remote_ids: set[str],
    request_id: str | None,
) -> None:
    account_id = str(account["id"])
    credentials = accounts.credentials_for(account)
    options = accounts.api_options()
    corrected_sink = build_webhook_url(settings.app_base_url, account_id, analysis.effective_group)

    try:
        remote_result = delete_remote_subscription(credentials, analysis.remote_id, **options)
    except FicError as exc:
        report.errored += 1
        report.errors.append(f"{analysis.remote_id}: misrouted delete failed [{exc.category}]: {exc}")
        report.items.append(_item(analysis, "errored", error=str(exc)))
        incr_metric("reconciliation.subscriptions.errored", reason="misrouted_delete")
        return
    if remote_result == "already_deleted":
        log_event(
            "fic_subscription_already_deleted",
            level=logging.WARNING,
            request_id=request_id,
            account_id=account_id,
            remote_id=analysis.remote_id,
        )
    # Gone remotely; any local row left behind is swept as missing.
    seen_remote_ids.discard(analysis.remote_id)
    try:
        subscription_store.delete_by_remote_id(analysis.remote_id)
    except Exception as exc:
        report.errors.append(f"{analysis.remote_id}: local delete of misrouted row failed: {exc}")
        incr_metric("reconciliation.subscriptions.errored", reason="misrouted_local_delete")
        log_event(
            "fic_subscription_local_delete_failed",
            level=logging.ERROR,
            request_id=request_id,
            account_id=account_id,
            remote_id=analysis.remote_id,
            error=str(exc),
        )

    # The remote delete above cannot be undone; a failed recreate leaves the
    # account under-subscribed until the next pass or a manual create.
    try:
        created = create_subscription_raw(
            credentials,
            sink=corrected_sink,
            types=analysis.types,
            verification_method=analysis.verification_method,
            **options,
        )
    except FicError as exc:
        report.errored += 1
        report.errors.append(
            f"{analysis.remote_id}: deleted misrouted subscription but recreation failed "
            f"[{exc.category}]: {exc}; types={analysis.types}"
        )
        report.items.append(_item(analysis, "misrouted_recreate_failed", error=str(exc)))
        incr_metric("reconciliation.subscriptions.recreate_failed")
        log_event(
            "fic_subscription_recreate_failed",
            level=logging.ERROR,
            request_id=request_id,
            account_id=account_id,
            remote_id=analysis.remote_id,
            types=analysis.types,
            sink=corrected_sink,
            error=str(exc),
        )
        return

    subscription_store.upsert_by_remote_id(
        {
            "fic_account_id": account_id,
            "fic_subscription_id": created["id"],
            "event_group": analysis.effective_group,
            "event_types": created["types"] or analysis.types,
            "sink": created["sink"] or corrected_sink,
            "verified": created["verified"],
            "is_active": True,
            "verification_method": analysis.verification_method,
            "webhook_secret": created.get("secret"),
            "expires_at": created.get("expires_at"),
            "verification_attempts": 0,
        }
    )
    seen_remote_ids.add(str(created["id"]))
    report.misrouted_recreated += 1
    report.items.append(_item(analysis, "misrouted_recreated", new_remote_id=created["id"]))
    incr_metric("reconciliation.subscriptions.misrouted_recreated")
    log_event(
        "fic_subscription_misrouted_recreated",
        level=logging.WARNING,
        request_id=request_id,
        account_id=account_id,
        old_remote_id=analysis.remote_id,
        new_remote_id=created["id"],
        url_account_id=analysis.url_account_id,
        types=analysis.types,
    )


def _reconcile_locked(
    account: dict[str, Any],
    *,
    dry_run: bool,
    request_id: str | None,
) -> AccountReconciliationReport:
    account_id = str(account["id"])
    report = AccountReconciliationReport(
        account_id=account_id,
        company_id=str(account["company_id"]) if account.get("company_id") is not None else None,
    )

    try:
        remote_subscriptions = list_remote_subscriptions(
            accounts.credentials_for(account),
            **accounts.api_options(),
        )
    except FicError as exc:
        if isinstance(exc, AuthenticationError) and not dry_run:
            accounts.mark_needs_refresh(account_id, str(exc), request_id=request_id)
        report.errored += 1
        report.errors.append(f"{account_id}: remote subscription list failed [{exc.category}]: {exc}")
        incr_metric("reconciliation.accounts.errored", category=exc.category)
        log_event(
            "fic_reconciliation_list_failed",
            level=logging.ERROR,
            request_id=request_id,
            account_id=account_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return report

    report.remote_count = len(remote_subscriptions)
    seen_remote_ids: set[str] = set()

    for remote in remote_subscriptions:
        analysis = analyze_remote_subscription(account_id, remote)
        if not analysis.remote_id:
            report.errored += 1
            report.errors.append(f"{account_id}: remote subscription without id (sink={analysis.sink})")
            report.items.append(_item(analysis, "errored", error="missing remote id"))
            continue
        seen_remote_ids.add(analysis.remote_id)

        if analysis.group_discrepancy:
            incr_metric("reconciliation.subscriptions.group_discrepancy")
            log_event(
                "fic_subscription_group_discrepancy",
                level=logging.WARNING,
                request_id=request_id,
                account_id=account_id,
                remote_id=analysis.remote_id,
                url_group=analysis.url_group,
                types_group=analysis.types_group,
                winning_source=analysis.group_source,
                winning_group=analysis.effective_group,
            )

        try:
            if analysis.misrouted:
                log_event(
                    "fic_subscription_misrouted",
                    level=logging.WARNING,
                    request_id=request_id,
                    account_id=account_id,
                    remote_id=analysis.remote_id,
                    url_account_id=analysis.url_account_id,
                    dry_run=dry_run,
                )
                if dry_run:
                    report.misrouted_recreated += 1
                    report.items.append(_item(analysis, "misrouted_recreated"))
                    continue
                _recreate_misrouted(
                    account=account,
                    analysis=analysis,
                    report=report,
                    seen_remote_ids=seen_remote_ids,
                    request_id=request_id,
                )
                continue

            local = subscription_store.get_by_remote_id(analysis.remote_id)
            desired = _local_row(account_id, analysis, remote)
            if local is None:
                action = "newly_discovered"
                report.newly_discovered += 1
            elif local.get("event_group") != analysis.effective_group:
                action = "group_key_corrected"
                report.group_key_corrected += 1
            elif _row_differs(local, desired) or str(local.get("fic_account_id")) != account_id:
                action = "updated"
                report.updated += 1
            else:
                report.matched_unchanged += 1
                report.items.append(_item(analysis, "matched_unchanged", previous_group=local.get("event_group")))
                continue

            if not dry_run:
                subscription_store.upsert_by_remote_id(desired)
            report.items.append(
                _item(analysis, action, previous_group=local.get("event_group") if local else None)
            )
            incr_metric("reconciliation.subscriptions.changed", action=action)
        except Exception as exc:
            report.errored += 1
            report.errors.append(f"{account_id}:{analysis.remote_id}: {type(exc).__name__}: {exc}")
            report.items.append(_item(analysis, "errored", error=str(exc)))
            incr_metric("reconciliation.subscriptions.errored", reason="local_write")
            log_event(
                "fic_reconciliation_item_failed",
                level=logging.ERROR,
                request_id=request_id,
                account_id=account_id,
                remote_id=analysis.remote_id,
                error=str(exc),
            )

    for local in subscription_store.list_for_account(account_id):
        if not local.get("is_active") or local.get("fic_subscription_id") in seen_remote_ids:
            continue
        # The remote silently stops listing deleted subscriptions.
        report.deactivated_missing += 1
        if not dry_run:
            subscription_store.deactivate(local["id"])
        log_event(
            "fic_subscription_missing_remotely",
            level=logging.WARNING,
            request_id=request_id,
            account_id=account_id,
            remote_id=local.get("fic_subscription_id"),
            dry_run=dry_run,
        )

    return report


def reconcile_account(
    account: dict[str, Any],
    *,
    dry_run: bool = False,
    request_id: str | None = None,
) -> AccountReconciliationReport:
    """Reconcile one account; concurrent passes for the same account are refused."""
    account_id = str(account["id"])
    lock = _account_lock(account_id)
    if not lock.acquire(blocking=False):
        incr_metric("reconciliation.accounts.busy")
        log_event(
            "fic_reconciliation_already_running",
            level=logging.WARNING,
            request_id=request_id,
            account_id=account_id,
        )
        return AccountReconciliationReport(
            account_id=account_id,
            skipped=True,
            errored=1,
            errors=[f"{account_id}: reconciliation already running"],
        )
    try:
        report = _reconcile_locked(account, dry_run=dry_run, request_id=request_id)
    finally:
        lock.release()

    incr_metric("reconciliation.accounts.completed")
    log_event(
        "fic_reconciliation_account_completed",
        request_id=request_id,
        account_id=account_id,
        dry_run=dry_run,
        remote_count=report.remote_count,
        matched_unchanged=report.matched_unchanged,
        updated=report.updated,
        group_key_corrected=report.group_key_corrected,
        misrouted_recreated=report.misrouted_recreated,
        newly_discovered=report.newly_discovered,
        deactivated_missing=report.deactivated_missing,
        errored=report.errored,
    )
    return report


def run_reconciliation(
    *,
    account_id: str | None = None,
    dry_run: bool = True,
    request_id: str | None = None,
) -> ReconciliationRunResponse:
    started_at = _now_utc()
    if account_id:
        account = accounts.get_account(account_id)
        targets = [account] if account else []
        missing = [] if account else [account_id]
    else:
        targets = accounts.list_active_accounts()
        missing = []

    reports: list[AccountReconciliationReport] = []
    for account_row in targets:
        try:
            reports.append(reconcile_account(account_row, dry_run=dry_run, request_id=request_id))
        except Exception as exc:
            reports.append(
                AccountReconciliationReport(
                    account_id=str(account_row.get("id")),
                    errored=1,
                    errors=[f"{account_row.get('id')}: {type(exc).__name__}: {exc}"],
                )
            )
            log_event(
                "fic_reconciliation_account_failed",
                level=logging.ERROR,
                request_id=request_id,
                account_id=account_row.get("id"),
                error=str(exc),
            )
    for missing_id in missing:
        reports.append(
            AccountReconciliationReport(
                account_id=missing_id,
                skipped=True,
                errored=1,
                errors=[f"{missing_id}: account not found"],
            )
        )

    incr_metric("reconciliation.runs.completed")
    log_event(
        "fic_reconciliation_completed",
        request_id=request_id,
        dry_run=dry_run,
        account_count=len(reports),
        total_errors=sum(report.errored for report in reports),
    )
    return ReconciliationRunResponse(
        dry_run=dry_run,
        started_at=started_at,
        finished_at=_now_utc(),
        accounts=reports,
    )


def diagnose_account(account: dict[str, Any]) -> AccountDiagnosisResponse:
    """Read-only view built on the same analysis the reconciler acts on."""
    account_id = str(account["id"])
    remote_subscriptions = list_remote_subscriptions(
        accounts.credentials_for(account),
        **accounts.api_options(),
    )
    local_rows = subscription_store.list_for_account(account_id)
    local_by_remote_id = {str(row.get("fic_subscription_id")): row for row in local_rows}
    now = _now_utc()

    diagnoses: list[SubscriptionDiagnosis] = []
    for remote in remote_subscriptions:
        analysis = analyze_remote_subscription(account_id, remote)
        local = local_by_remote_id.get(str(analysis.remote_id)) if analysis.remote_id else None
        diagnoses.append(
            SubscriptionDiagnosis(
                remote_id=analysis.remote_id,
                sink=analysis.sink,
                verified=analysis.verified,
                types=analysis.types,
                url_account_id=analysis.url_account_id,
                url_group=analysis.url_group,
                types_group=analysis.types_group,
                effective_group=analysis.effective_group,
                group_source=analysis.group_source,
                url_matches_pattern=analysis.url_matches_pattern,
                group_discrepancy=analysis.group_discrepancy,
                misrouted=analysis.misrouted,
                local_subscription_id=str(local["id"]) if local else None,
                local_group=local.get("event_group") if local else None,
                state=(
                    subscription_state(local, now=now, lead_days=settings.fic_subscription_renewal_lead_days)
                    if local
                    else None
                ),
            )
        )

    remote_ids = {str(item.remote_id) for item in diagnoses if item.remote_id}
    return AccountDiagnosisResponse(
        account_id=account_id,
        company_id=str(account["company_id"]) if account.get("company_id") is not None else None,
        remote_count=len(remote_subscriptions),
        local_count=len(local_rows),
        local_only=sorted(remote_id for remote_id in local_by_remote_id if remote_id not in remote_ids),
        subscriptions=diagnoses,
    )
