"""
Admin-only DNS billing operations.
Requires X-Admin-Key header for all endpoints.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from hostportal.core.config import settings
from hostportal.core.errors import PermissionError
from hostportal.core.logging import log_event
from hostportal.api.dns_plans import token_provider
from hostportal.features.dns_plans.engine import grant_tokens
from hostportal.features.dns_plans.reconcile_job import run_settlement_sweep
from hostportal.features.dns_plans.renewals import get_renewal_stats, process_monthly_renewals


router = APIRouter(prefix="/api/admin/dns-plans", tags=["admin-dns-plans"])


def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> str:
    admin_key = settings.ADMIN_KEY
    if not admin_key or not x_admin_key or x_admin_key != admin_key:
        log_event(
            "warning",
            "admin.invalid_key",
            error_code="forbidden",
            extra={"key_prefix": x_admin_key[:4] if x_admin_key else "none"},
        )
        raise PermissionError("Invalid or missing X-Admin-Key header")
    return x_admin_key


class GrantTokensRequest(BaseModel):
    user_id: str
    amount_cents: int = Field(..., gt=0)
    reason: str = "admin grant"


@router.post("/renewals/run")
def run_renewals(_: str = Depends(require_admin_key), token_client=Depends(token_provider)):
    return process_monthly_renewals(token_client)


@router.get("/renewals/stats")
def renewal_stats(_: str = Depends(require_admin_key)):
    return get_renewal_stats()


@router.get("/settlement-sweep")
def settlement_sweep(
    stale_minutes: Optional[int] = Query(None, ge=0),
    _: str = Depends(require_admin_key),
):
    return run_settlement_sweep(stale_minutes=stale_minutes)


@router.post("/tokens/grant")
def grant(request: GrantTokensRequest, _: str = Depends(require_admin_key), token_client=Depends(token_provider)):
    return grant_tokens(request.user_id, request.amount_cents, request.reason, token_client=token_client)
