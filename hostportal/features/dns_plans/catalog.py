"""
hostportal/features/dns_plans/catalog.py

DNS plan catalog.

Handles:
- Plan seeding (free, basic, pro, enterprise)
- Plan lookup and active plan listing
"""

from typing import List, Optional
from sqlalchemy import select, insert
from sqlalchemy.orm import Session

from hostportal.core.database import get_db_session, dns_plans
from hostportal.models.dns_plan import DnsPlan


# Default plan configurations
DEFAULT_PLANS = [
    {
        "name": "Free",
        "description": "One domain with basic DNS records",
        "monthly_price_cents": 0,
        "max_domains": 1,
        "max_records": 10,
        "features": ["1 domain", "10 records per domain"],
        "display_order": 0,
    },
    {
        "name": "Basic",
        "description": "For personal projects",
        "monthly_price_cents": 500,
        "max_domains": 5,
        "max_records": 50,
        "features": ["5 domains", "50 records per domain"],
        "display_order": 1,
    },
    {
        "name": "Pro",
        "description": "For growing sites",
        "monthly_price_cents": 1500,
        "max_domains": 20,
        "max_records": 200,
        "features": ["20 domains", "200 records per domain"],
        "display_order": 2,
    },
    {
        "name": "Enterprise",
        "description": "For agencies and resellers",
        "monthly_price_cents": 4000,
        "max_domains": 100,
        "max_records": 1000,
        "features": ["100 domains", "1000 records per domain"],
        "display_order": 3,
    },
]


def row_to_plan(row) -> DnsPlan:
    return DnsPlan(
        id=row.id,
        name=row.name,
        description=row.description or "",
        monthly_price_cents=int(row.monthly_price_cents),
        max_domains=int(row.max_domains),
        max_records=int(row.max_records),
        features=list(row.features or []),
        is_active=bool(row.is_active),
        display_order=int(row.display_order or 0),
    )


def seed_plans() -> List[DnsPlan]:
    """
    Seed default plans into database (idempotent, keyed by name).

    Safe to call multiple times.
    """
    with get_db_session() as session:
        for config in DEFAULT_PLANS:
            existing = session.execute(
                select(dns_plans.c.id).where(dns_plans.c.name == config["name"])
            ).first()
            if not existing:
                session.execute(insert(dns_plans).values(is_active=True, **config))
    return list_active_plans()


def get_plan(session: Session, plan_id: int, *, active_only: bool = True) -> Optional[DnsPlan]:
    """Get plan by ID within an existing session."""
    query = select(dns_plans).where(dns_plans.c.id == plan_id)
    if active_only:
        query = query.where(dns_plans.c.is_active == True)
    row = session.execute(query).first()
    return row_to_plan(row) if row else None


def get_plans_by_id(session: Session, plan_ids: List[int]) -> dict:
    if not plan_ids:
        return {}
    rows = session.execute(select(dns_plans).where(dns_plans.c.id.in_(plan_ids))).all()
    return {row.id: row_to_plan(row) for row in rows}


def list_active_plans() -> List[DnsPlan]:
    """All purchasable plans, ordered for display."""
    with get_db_session() as session:
        rows = session.execute(
            select(dns_plans)
            .where(dns_plans.c.is_active == True)
            .order_by(dns_plans.c.display_order, dns_plans.c.monthly_price_cents)
        ).all()
        return [row_to_plan(row) for row in rows]
