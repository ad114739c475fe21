"""
DNS plan API routes.

- GET  /api/dns-plans                  Active plan catalog
- GET  /api/dns-plans/subscriptions    Caller's subscriptions
- GET  /api/dns-plans/limits           Caller's domain limits and usage
- GET  /api/dns-plans/transactions     Caller's DNS billing ledger
- POST /api/dns-plans/purchase         Buy a plan
- POST /api/dns-plans/change           Upgrade or downgrade
- POST /api/dns-plans/cancel           Cancel a subscription

The caller is identified by the X-User-Id header, set by the portal's auth layer.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from hostportal.core.errors import ExternalBalanceUnavailableError
from hostportal.core.logging import log_event
from hostportal.features.dns_plans import engine
from hostportal.features.dns_plans.catalog import list_active_plans
from hostportal.features.dns_plans.ledger import get_user_ledger
from hostportal.features.dns_plans.subscriptions import get_plan_limits, list_user_subscriptions
from hostportal.features.provisioning.interserver_client import get_provisioning_client
from hostportal.features.provisioning.provider import ProvisioningError
from hostportal.features.tokens.provider import TokenAccountError
from hostportal.features.tokens.virtfusion_client import get_token_client


router = APIRouter(prefix="/api/dns-plans", tags=["dns-plans"])


class PurchaseRequest(BaseModel):
    plan_id: int


class ChangeRequest(BaseModel):
    plan_id: int
    keep_domain_ids: Optional[List[int]] = None


class CancelRequest(BaseModel):
    subscription_id: int


class PlanOut(BaseModel):
    id: int
    name: str
    description: str
    price: str
    monthly_price_cents: int
    max_domains: int
    max_records: int
    features: List[str] = Field(default_factory=list)


def require_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def token_provider():
    """Token account client for this request, closed when the request ends."""
    try:
        client = get_token_client()
    except TokenAccountError as e:
        raise ExternalBalanceUnavailableError(f"Token account service is not configured: {e}") from e
    try:
        yield client
    finally:
        client.close()


def provisioning_provider():
    """DNS host client, or None when InterServer is not configured."""
    try:
        client = get_provisioning_client()
    except ProvisioningError as e:
        log_event("warning", "dns_plans.provisioning_unconfigured", extra={"error": str(e)})
        yield None
        return
    try:
        yield client
    finally:
        client.close()


@router.get("", response_model=List[PlanOut])
def get_plans():
    return [
        PlanOut(
            id=p.id,
            name=p.name,
            description=p.description,
            price=str(p.price),
            monthly_price_cents=p.monthly_price_cents,
            max_domains=p.max_domains,
            max_records=p.max_records,
            features=p.features,
        )
        for p in list_active_plans()
    ]


@router.get("/subscriptions")
def get_subscriptions(user_id: str = Depends(require_user)):
    return {"subscriptions": list_user_subscriptions(user_id)}


@router.get("/limits")
def get_limits(user_id: str = Depends(require_user)):
    return get_plan_limits(user_id)


@router.get("/transactions")
def get_transactions(
    limit: int = Query(20, ge=1, le=200),
    user_id: str = Depends(require_user),
):
    return {"transactions": [t.model_dump(mode="json") for t in get_user_ledger(user_id, limit=limit)]}


@router.post("/purchase")
def purchase_plan(
    request: PurchaseRequest,
    user_id: str = Depends(require_user),
    token_client=Depends(token_provider),
):
    """
    Purchase a DNS plan with VirtFusion tokens.

    Errors:
        402: insufficient_funds (details carry required/available/shortfall)
        409: already_subscribed, conflicting_plan (use /change instead)
        502: external_debit_failed, external_balance_unavailable
    """
    result = engine.purchase(user_id, request.plan_id, token_client=token_client)
    return {"success": True, **result.to_dict()}


@router.post("/change")
def change_plan(
    request: ChangeRequest,
    user_id: str = Depends(require_user),
    token_client=Depends(token_provider),
    provisioning_client=Depends(provisioning_provider),
):
    """
    Upgrade or downgrade the active DNS plan.

    A downgrade below the current domain count needs keep_domain_ids with
    exactly the new plan's max_domains entries. A 200 response may still
    carry settlement_warning or eviction failures.
    """
    result = engine.change(
        user_id,
        request.plan_id,
        request.keep_domain_ids,
        token_client=token_client,
        provisioning_client=provisioning_client,
    )
    return {"success": True, **result.to_dict()}


@router.post("/cancel")
def cancel_plan(request: CancelRequest, user_id: str = Depends(require_user)):
    subscription = engine.cancel(user_id, request.subscription_id)
    return {"success": True, "subscription": subscription.model_dump(mode="json")}
