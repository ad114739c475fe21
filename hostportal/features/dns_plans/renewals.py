"""
Monthly DNS plan renewals.

Meant to run from a scheduler on the 1st of every month. Each due paid
subscription is renewed independently; one user's failure never aborts the
batch. Subscriptions that cannot be paid for are suspended.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import select, update, func

from hostportal.core.database import get_db_session, dns_plan_subscriptions, dns_plans, users
from hostportal.core.logging import log_event
from hostportal.features.dns_plans.billing_clock import as_utc, cents_to_amount, cycle_end, next_cycle_start, utc_now
from hostportal.features.dns_plans.catalog import get_plans_by_id
from hostportal.features.dns_plans.ledger import record_transaction, settle_transaction
from hostportal.features.dns_plans.subscriptions import lock_user, row_to_subscription
from hostportal.features.tokens.provider import TokenAccountError, TokenAccountProvider
from hostportal.models.dns_plan import DnsPlan
from hostportal.models.subscription import Subscription, SubscriptionStatus, TransactionStatus, TransactionType


class RenewalError(Exception):
    """A single subscription could not be renewed."""


def _due_subscriptions(now: datetime):
    with get_db_session() as session:
        rows = session.execute(
            select(dns_plan_subscriptions, users.c.token_relation_id)
            .join(dns_plans, dns_plans.c.id == dns_plan_subscriptions.c.plan_id)
            .join(users, users.c.user_id == dns_plan_subscriptions.c.user_id)
            .where(dns_plan_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .where(dns_plan_subscriptions.c.auto_renew == True)
            .where(dns_plan_subscriptions.c.next_payment_date <= now)
            .where(dns_plans.c.monthly_price_cents > 0)
            .order_by(dns_plan_subscriptions.c.id)
        ).all()
        plans = get_plans_by_id(session, list({row.plan_id for row in rows}))

    return [(row_to_subscription(row), plans[row.plan_id], row.token_relation_id) for row in rows]


def _suspend(subscription: Subscription, plan: DnsPlan, now: datetime, required: int, available: int) -> None:
    with get_db_session() as session:
        lock_user(session, subscription.user_id)
        session.execute(
            update(dns_plan_subscriptions)
            .where(dns_plan_subscriptions.c.id == subscription.id)
            .values(status=SubscriptionStatus.SUSPENDED.value, auto_renew=False, updated_at=now)
        )
        record_transaction(
            session,
            user_id=subscription.user_id,
            amount=-plan.price,
            type=TransactionType.PLAN_RENEWAL_FAILED,
            status=TransactionStatus.FAILED,
            description=(
                f"DNS plan renewal failed: {plan.name} "
                f"(insufficient tokens: {required} required, {available} available)"
            ),
        )


def renew_subscription(
    subscription: Subscription,
    plan: DnsPlan,
    external_id: Optional[str],
    token_client: TokenAccountProvider,
    now: datetime,
) -> int:
    """
    Charge one billing cycle and roll the subscription forward.

    Returns the ledger transaction id.

    Raises:
        RenewalError: Not linked, balance unreadable, insufficient funds, or debit failed
    """
    tokens_required = plan.monthly_price_cents
    if not external_id:
        raise RenewalError(f"User {subscription.user_id} is not linked to a token account")

    try:
        balance = token_client.get_balance(external_id)
    except TokenAccountError as e:
        raise RenewalError(f"Failed to check token balance: {e}") from e

    if balance < tokens_required:
        _suspend(subscription, plan, now, tokens_required, balance)
        raise RenewalError(
            f"Insufficient tokens (required: {tokens_required}, available: {balance})"
        )

    with get_db_session() as session:
        transaction_id = record_transaction(
            session,
            user_id=subscription.user_id,
            amount=-plan.price,
            type=TransactionType.PLAN_RENEWAL,
            description=f"DNS plan monthly renewal: {plan.name}",
        )

    try:
        operation = token_client.debit(external_id, tokens_required, str(transaction_id))
    except TokenAccountError as e:
        with get_db_session() as session:
            settle_transaction(session, transaction_id, TransactionStatus.FAILED)
        log_event(
            "error",
            "dns_renewal.debit_failed",
            user_id=subscription.user_id,
            event_type="dns_renewal",
            error_code="external_debit_failed",
            extra={"transaction_id": transaction_id, "subscription_id": subscription.id, "error": str(e)},
        )
        raise RenewalError(f"Token deduction failed: {e}") from e

    with get_db_session() as session:
        lock_user(session, subscription.user_id)
        session.execute(
            update(dns_plan_subscriptions)
            .where(dns_plan_subscriptions.c.id == subscription.id)
            .values(
                last_payment_date=now,
                next_payment_date=next_cycle_start(now),
                end_date=cycle_end(now),
                updated_at=now,
            )
        )
        settle_transaction(
            session,
            transaction_id,
            TransactionStatus.COMPLETED,
            external_reference=operation.external_operation_id,
        )
    return transaction_id


def process_monthly_renewals(token_client: TokenAccountProvider, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) if now else utc_now()
    results: Dict[str, Any] = {"processed": 0, "successful": 0, "failed": 0, "errors": []}

    if now.day != 1:
        results["skipped"] = True
        return results

    for subscription, plan, external_id in _due_subscriptions(now):
        results["processed"] += 1
        try:
            renew_subscription(subscription, plan, external_id, token_client, now)
            results["successful"] += 1
        except RenewalError as e:
            results["failed"] += 1
            results["errors"].append({
                "user_id": subscription.user_id,
                "plan_name": plan.name,
                "error": str(e),
            })
            log_event(
                "warning",
                "dns_renewal.failed",
                user_id=subscription.user_id,
                event_type="dns_renewal",
                extra={"subscription_id": subscription.id, "error": str(e)},
            )

    results["skipped"] = False
    log_event(
        "info",
        "dns_renewal.batch_complete",
        event_type="dns_renewal",
        extra={k: results[k] for k in ("processed", "successful", "failed")},
    )
    return results


def get_renewal_stats(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) if now else utc_now()
    active = dns_plan_subscriptions.c.status == SubscriptionStatus.ACTIVE.value

    with get_db_session() as session:
        total_active = session.execute(
            select(func.count()).select_from(dns_plan_subscriptions).where(active)
        ).scalar() or 0
        due_today = session.execute(
            select(func.count())
            .select_from(dns_plan_subscriptions)
            .where(active)
            .where(dns_plan_subscriptions.c.auto_renew == True)
            .where(dns_plan_subscriptions.c.next_payment_date <= now)
        ).scalar() or 0
        suspended = session.execute(
            select(func.count())
            .select_from(dns_plan_subscriptions)
            .where(dns_plan_subscriptions.c.status == SubscriptionStatus.SUSPENDED.value)
        ).scalar() or 0
        revenue_cents = session.execute(
            select(func.coalesce(func.sum(dns_plans.c.monthly_price_cents), 0))
            .select_from(dns_plan_subscriptions)
            .join(dns_plans, dns_plans.c.id == dns_plan_subscriptions.c.plan_id)
            .where(active)
        ).scalar() or 0

    return {
        "total_active_subscriptions": int(total_active),
        "subscriptions_due_today": int(due_today),
        "suspended_subscriptions": int(suspended),
        "total_monthly_revenue": str(cents_to_amount(int(revenue_cents))),
    }
