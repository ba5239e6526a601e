from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.domain.errors import FicError, fic_error_detail, fic_error_http_status
from src.domain.lifecycle import subscription_state
from src.models.subscriptions import (
    AccountDiagnosisResponse,
    SubscriptionCreateRequest,
    SubscriptionDeleteResponse,
    SubscriptionResponse,
    VerificationRetryResponse,
)
from src.observability import log_event
from src.services import accounts, reconciler, subscription_store
from src.services import subscriptions as subscription_service


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _raise_fic_error(operation: str, exc: FicError, *, request_id: str | None, **context: Any) -> None:
    log_event(
        "fic_operation_failed",
        level=logging.WARNING if exc.retryable else logging.ERROR,
        request_id=request_id,
        operation=operation,
        error_type=type(exc).__name__,
        category=exc.category,
        error=str(exc),
        **context,
    )
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    raise HTTPException(
        status_code=fic_error_http_status(exc),
        detail=fic_error_detail(operation=operation, exc=exc),
        headers=headers,
    ) from exc


def _load_account_or_404(account_id: str) -> dict[str, Any]:
    account = accounts.get_account(account_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="FIC account not found")
    return account


def _load_subscription_or_404(subscription_id: str) -> dict[str, Any]:
    row = subscription_store.get_subscription(subscription_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return row


def _to_response(row: dict[str, Any], now: datetime) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=str(row["id"]),
        fic_account_id=str(row["fic_account_id"]),
        fic_subscription_id=str(row["fic_subscription_id"]),
        event_group=row.get("event_group") or "default",
        event_types=row.get("event_types") or [],
        sink=row.get("sink"),
        is_active=bool(row.get("is_active")),
        verified=bool(row.get("verified")),
        verification_method=row.get("verification_method"),
        expires_at=row.get("expires_at"),
        verification_attempts=int(row.get("verification_attempts") or 0),
        last_verification_attempt_at=row.get("last_verification_attempt_at"),
        state=subscription_state(row, now=now, lead_days=settings.fic_subscription_renewal_lead_days),
        has_secret=bool(row.get("webhook_secret")),
        warnings=row.get("warnings") or [],
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    account_id: str | None = None,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    rows = subscription_store.list_for_account(account_id) if account_id else subscription_store.list_all()
    now = datetime.now(timezone.utc)
    return [_to_response(row, now) for row in rows]


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: SubscriptionCreateRequest,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    request_id = _request_id(request)
    account = _load_account_or_404(data.account_id)
    try:
        row = subscription_service.create_subscription(
            account,
            types=data.types,
            sink=data.sink,
            verification_method=data.verification_method,
            event_group=data.event_group,
            request_id=request_id,
        )
    except FicError as exc:
        _raise_fic_error("create_subscription", exc, request_id=request_id, account_id=data.account_id)
    return _to_response(row, datetime.now(timezone.utc))


@router.get("/diagnose/{account_id}", response_model=AccountDiagnosisResponse)
async def diagnose_account_subscriptions(
    account_id: str,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    request_id = _request_id(request)
    account = _load_account_or_404(account_id)
    try:
        return reconciler.diagnose_account(account)
    except FicError as exc:
        _raise_fic_error("diagnose_subscriptions", exc, request_id=request_id, account_id=account_id)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return _to_response(_load_subscription_or_404(subscription_id), datetime.now(timezone.utc))


@router.delete("/{subscription_id}", response_model=SubscriptionDeleteResponse)
async def delete_subscription(
    subscription_id: str,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    request_id = _request_id(request)
    row = _load_subscription_or_404(subscription_id)
    account = _load_account_or_404(str(row["fic_account_id"]))
    try:
        remote_result = subscription_service.delete_subscription(row, account, request_id=request_id)
    except FicError as exc:
        _raise_fic_error(
            "delete_subscription",
            exc,
            request_id=request_id,
            subscription_id=subscription_id,
        )
    return SubscriptionDeleteResponse(
        subscription_id=str(row["id"]),
        fic_subscription_id=str(row["fic_subscription_id"]),
        remote_result=remote_result,
    )


@router.post("/{subscription_id}/retry-verification", response_model=VerificationRetryResponse)
async def retry_subscription_verification(
    subscription_id: str,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    request_id = _request_id(request)
    row = _load_subscription_or_404(subscription_id)
    account = _load_account_or_404(str(row["fic_account_id"]))
    try:
        updated = subscription_service.retry_verification(row, account, request_id=request_id)
    except FicError as exc:
        _raise_fic_error(
            "retry_verification",
            exc,
            request_id=request_id,
            subscription_id=subscription_id,
        )
    attempts = int(updated.get("verification_attempts") or 0)
    return VerificationRetryResponse(
        subscription_id=str(updated["id"]),
        fic_subscription_id=str(updated["fic_subscription_id"]),
        verified=bool(updated.get("verified")),
        verification_attempts=attempts,
        attempts_remaining=max(0, settings.fic_verification_max_attempts - attempts),
    )
