from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.db import supabase
from src.models.reconciliation import (
    ReconciliationRunRequest,
    ReconciliationRunResponse,
    RenewalRunRequest,
    RenewalRunResponse,
)
from src.observability import incr_metric, log_event, persist_metrics_snapshot
from src.services.reconciler import run_reconciliation
from src.services.subscriptions import renew_expiring_subscriptions


router = APIRouter(prefix="/api/internal/reconciliation", tags=["internal-reconciliation"])


def _persist_metrics(source: str, request_id: str | None) -> None:
    persist_metrics_snapshot(
        supabase_client=supabase,
        source=source,
        request_id=request_id,
        reset_after_persist=False,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )


def _require_scheduler_secret(provided: str | None, *, request_id: str | None, job: str) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not provided or not hmac.compare_digest(provided, configured_secret):
        incr_metric("reconciliation.scheduled.auth_failed", job=job)
        log_event("reconciliation_scheduled_auth_failed", request_id=request_id, job=job)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
    incr_metric("reconciliation.scheduled.auth_succeeded", job=job)


def _run_subscription_reconciliation(
    data: ReconciliationRunRequest,
    request_id: str | None,
) -> ReconciliationRunResponse:
    response = run_reconciliation(account_id=data.account_id, dry_run=data.dry_run, request_id=request_id)
    _persist_metrics("reconciliation", request_id)
    return response


def _run_renewal_sweep(data: RenewalRunRequest, request_id: str | None) -> RenewalRunResponse:
    response = renew_expiring_subscriptions(
        lead_days=data.lead_days,
        dry_run=data.dry_run,
        request_id=request_id,
    )
    _persist_metrics("renewal_sweep", request_id)
    return response


@router.post("/subscriptions", response_model=ReconciliationRunResponse)
async def reconcile_subscriptions(
    data: ReconciliationRunRequest,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return _run_subscription_reconciliation(data, getattr(request.state, "request_id", None))


@router.post("/renewals", response_model=RenewalRunResponse)
async def renew_subscriptions(
    data: RenewalRunRequest,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return _run_renewal_sweep(data, getattr(request.state, "request_id", None))


@router.post("/run-scheduled", response_model=ReconciliationRunResponse)
async def run_reconciliation_scheduled(
    data: ReconciliationRunRequest,
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    _require_scheduler_secret(x_internal_scheduler_secret, request_id=request_id, job="reconciliation")
    return _run_subscription_reconciliation(data, request_id)


@router.post("/renewals/run-scheduled", response_model=RenewalRunResponse)
async def run_renewals_scheduled(
    data: RenewalRunRequest,
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    _require_scheduler_secret(x_internal_scheduler_secret, request_id=request_id, job="renewals")
    return _run_renewal_sweep(data, request_id)
