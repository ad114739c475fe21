"""
hostportal/features/dns_plans/subscriptions.py

Subscription and managed-domain store.

Handles:
- Per-user locking (SELECT ... FOR UPDATE on the user row)
- Active subscription lookups and supersession
- Managed domain listing and removal
- Plan limits and usage
"""

from datetime import datetime
from typing import List, Optional, Dict, Any

from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.orm import Session

from hostportal.core.database import get_db_session, users, dns_plan_subscriptions, dns_domains
from hostportal.core.errors import NotFoundError
from hostportal.features.dns_plans.billing_clock import as_utc
from hostportal.features.dns_plans.catalog import get_plans_by_id
from hostportal.models.dns_plan import ManagedDomain
from hostportal.models.subscription import Subscription, SubscriptionStatus


def row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        start_date=as_utc(row.start_date),
        end_date=as_utc(row.end_date),
        auto_renew=bool(row.auto_renew),
        last_payment_date=as_utc(row.last_payment_date),
        next_payment_date=as_utc(row.next_payment_date),
    )


def row_to_domain(row) -> ManagedDomain:
    return ManagedDomain(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        external_id=row.external_id,
        status=row.status,
    )


def get_user(session: Session, user_id: str, *, lock: bool = False):
    """
    Load the user row, optionally taking the per-user lock.

    Raises:
        NotFoundError: If the user does not exist
    """
    query = select(users).where(users.c.user_id == user_id)
    if lock:
        query = query.with_for_update()
    row = session.execute(query).first()
    if not row:
        raise NotFoundError(f"User not found: {user_id}")
    return row


def lock_user(session: Session, user_id: str):
    """Serialize read-check-write sections for one user until commit."""
    return get_user(session, user_id, lock=True)


def get_active_subscriptions(session: Session, user_id: str) -> List[Subscription]:
    rows = session.execute(
        select(dns_plan_subscriptions)
        .where(dns_plan_subscriptions.c.user_id == user_id)
        .where(dns_plan_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
        .order_by(dns_plan_subscriptions.c.id)
    ).all()
    return [row_to_subscription(row) for row in rows]


def get_subscription(session: Session, subscription_id: int) -> Optional[Subscription]:
    row = session.execute(
        select(dns_plan_subscriptions).where(dns_plan_subscriptions.c.id == subscription_id)
    ).first()
    return row_to_subscription(row) if row else None


def insert_subscription(
    session: Session,
    *,
    user_id: str,
    plan_id: int,
    start_date: datetime,
    end_date: datetime,
    next_payment_date: Optional[datetime],
    last_payment_date: Optional[datetime],
) -> Subscription:
    result = session.execute(
        insert(dns_plan_subscriptions).values(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=start_date,
            end_date=end_date,
            auto_renew=True,
            last_payment_date=last_payment_date,
            next_payment_date=next_payment_date,
        )
    )
    return get_subscription(session, int(result.inserted_primary_key[0]))


def set_subscription_status(
    session: Session,
    subscription_ids: List[int],
    status: SubscriptionStatus,
    now: datetime,
) -> int:
    """Move subscriptions to a terminal status; auto_renew is switched off."""
    if not subscription_ids:
        return 0
    result = session.execute(
        update(dns_plan_subscriptions)
        .where(dns_plan_subscriptions.c.id.in_(subscription_ids))
        .values(status=status.value, auto_renew=False, updated_at=now)
    )
    return result.rowcount


def list_user_domains(session: Session, user_id: str) -> List[ManagedDomain]:
    rows = session.execute(
        select(dns_domains)
        .where(dns_domains.c.user_id == user_id)
        .order_by(dns_domains.c.id)
    ).all()
    return [row_to_domain(row) for row in rows]


def count_user_domains(session: Session, user_id: str) -> int:
    return int(
        session.execute(
            select(func.count()).select_from(dns_domains).where(dns_domains.c.user_id == user_id)
        ).scalar() or 0
    )


def delete_domain(session: Session, user_id: str, domain_id: int) -> int:
    result = session.execute(
        delete(dns_domains)
        .where(dns_domains.c.id == domain_id)
        .where(dns_domains.c.user_id == user_id)
    )
    return result.rowcount


def list_user_subscriptions(user_id: str) -> List[Dict[str, Any]]:
    """All of a user's subscriptions, newest first, with a plan summary."""
    with get_db_session() as session:
        rows = session.execute(
            select(dns_plan_subscriptions)
            .where(dns_plan_subscriptions.c.user_id == user_id)
            .order_by(dns_plan_subscriptions.c.created_at.desc(), dns_plan_subscriptions.c.id.desc())
        ).all()
        subscriptions = [row_to_subscription(row) for row in rows]
        plans = get_plans_by_id(session, list({s.plan_id for s in subscriptions}))

    result = []
    for sub in subscriptions:
        plan = plans.get(sub.plan_id)
        entry = sub.model_dump(mode="json")
        entry["plan"] = plan.summary() if plan else None
        result.append(entry)
    return result


def get_plan_limits(user_id: str) -> Dict[str, Any]:
    """
    Domain/record limits granted by the user's active plan, with usage.

    When several active subscriptions exist the most generous limits apply.
    """
    with get_db_session() as session:
        active = get_active_subscriptions(session, user_id)
        plans = get_plans_by_id(session, [s.plan_id for s in active])
        domain_count = count_user_domains(session, user_id)

    active_plans = [plans[s.plan_id] for s in active if s.plan_id in plans]
    if not active_plans:
        return {
            "has_active_plan": False,
            "limits": {"max_domains": 0, "max_records": 0},
            "usage": {"domains": domain_count},
            "can_add_domain": True,
            "active_plans": [],
        }

    max_domains = max(p.max_domains for p in active_plans)
    max_records = max(p.max_records for p in active_plans)
    return {
        "has_active_plan": True,
        "limits": {"max_domains": max_domains, "max_records": max_records},
        "usage": {"domains": domain_count},
        "can_add_domain": domain_count < max_domains,
        "active_plans": [p.summary() for p in active_plans],
    }
