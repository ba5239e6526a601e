import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status
import bcrypt as bcrypt_lib
from pydantic import BaseModel, EmailStr
from src.auth import SuperAdminContext, get_current_super_admin, create_super_admin_token
from src.config import settings
from src.db import supabase
from src.observability import metrics_snapshot, persist_metrics_snapshot

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against hash."""
    return bcrypt_lib.checkpw(password.encode(), password_hash.encode())


router = APIRouter(prefix="/api/super-admin", tags=["super-admin"])


# --- Request/Response Models ---

class SuperAdminLoginRequest(BaseModel):
    email: EmailStr
    password: str


class SuperAdminLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SuperAdminMeResponse(BaseModel):
    super_admin_id: str
    email: str


class FicAccountResponse(BaseModel):
    id: str
    name: str | None = None
    company_id: str | None = None
    company_name: str | None = None
    status: str
    status_note: str | None = None
    token_expires_at: datetime | None = None
    subscription_count: int = 0
    active_subscription_count: int = 0


class MetricsSnapshotRecord(BaseModel):
    id: str
    source: str
    request_id: str | None = None
    counters: dict
    created_at: datetime


class MetricsSnapshotFlushRequest(BaseModel):
    source: str = "super_admin_flush"
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int


# --- Login (no auth required) ---

@router.post("/login", response_model=SuperAdminLoginResponse)
async def super_admin_login(data: SuperAdminLoginRequest):
    """Login as super-admin, returns JWT with type 'super_admin'."""
    try:
        result = supabase.table("super_admins").select(
            "id, email, password_hash"
        ).eq("email", data.email).execute()
    except Exception as e:
        logger.error(f"Database error during super-admin login: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database connection failed: {type(e).__name__}"
        )

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    super_admin = result.data[0]

    try:
        if not verify_password(data.password, super_admin["password_hash"]):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password"
            )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Password verification error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Password verification failed: {type(e).__name__}"
        )

    return SuperAdminLoginResponse(access_token=create_super_admin_token(super_admin_id=super_admin["id"]))


@router.get("/me", response_model=SuperAdminMeResponse)
async def get_me(ctx: SuperAdminContext = Depends(get_current_super_admin)):
    """Get current super-admin info."""
    return SuperAdminMeResponse(
        super_admin_id=ctx.super_admin_id,
        email=ctx.email,
    )


# --- FIC accounts (read-only; connected through the OAuth flow) ---

@router.get("/fic-accounts", response_model=list[FicAccountResponse])
async def list_fic_accounts(ctx: SuperAdminContext = Depends(get_current_super_admin)):
    accounts = supabase.table("fic_accounts").select(
        "id, name, company_id, company_name, status, status_note, token_expires_at"
    ).execute().data or []
    subscriptions = supabase.table("fic_subscriptions").select(
        "fic_account_id, is_active"
    ).execute().data or []

    response = []
    for account in sorted(accounts, key=lambda row: str(row.get("id"))):
        owned = [row for row in subscriptions if str(row.get("fic_account_id")) == str(account["id"])]
        response.append(FicAccountResponse(
            id=str(account["id"]),
            name=account.get("name"),
            company_id=str(account["company_id"]) if account.get("company_id") is not None else None,
            company_name=account.get("company_name"),
            status=account.get("status") or "active",
            status_note=account.get("status_note"),
            token_expires_at=account.get("token_expires_at"),
            subscription_count=len(owned),
            active_subscription_count=sum(1 for row in owned if row.get("is_active")),
        ))
    return response


# --- Observability ---

@router.get("/observability/metrics")
async def get_current_metrics(
    prefix: str | None = None,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return {"counters": metrics_snapshot(prefix)}


@router.get("/observability/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
async def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    result = (
        supabase.table("observability_metric_snapshots")
        .select("id, source, request_id, counters, created_at")
        .execute()
    )
    rows = result.data or []
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.post("/observability/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics_snapshot(
    data: MetricsSnapshotFlushRequest,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=supabase,
        source=data.source,
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )
