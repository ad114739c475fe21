"""
Settlement sweep.

Finds ledger rows whose token settlement never finished so support staff can
settle them by hand. Report-only: nothing is retried or corrected here.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from sqlalchemy import select

from hostportal.core.config import settings
from hostportal.core.database import get_db_session, ledger_transactions
from hostportal.core.logging import log_event
from hostportal.features.dns_plans.billing_clock import as_utc, utc_now
from hostportal.features.dns_plans.ledger import row_to_transaction
from hostportal.models.subscription import TransactionStatus, TransactionType

SETTLED_TYPES = [
    TransactionType.PLAN_PURCHASE.value,
    TransactionType.PLAN_UPGRADE.value,
    TransactionType.PLAN_DOWNGRADE.value,
    TransactionType.PLAN_REFUND.value,
    TransactionType.PLAN_RENEWAL.value,
    TransactionType.TOKEN_CREDIT.value,
]
# A failed row of these types means tokens still owed one way or the other
UNSETTLED_FAILURE_TYPES = [
    TransactionType.PLAN_UPGRADE.value,
    TransactionType.PLAN_DOWNGRADE.value,
    TransactionType.PLAN_REFUND.value,
]


def _finding(txn) -> Dict[str, Any]:
    return {
        "transaction_id": txn.id,
        "user_id": txn.user_id,
        "type": txn.type.value,
        "amount": str(txn.amount),
        "status": txn.status.value,
        "description": txn.description,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
    }


def run_settlement_sweep(now: Optional[datetime] = None, stale_minutes: Optional[int] = None) -> Dict[str, Any]:
    now = as_utc(now) if now else utc_now()
    if stale_minutes is None:
        stale_minutes = settings.DNS_SETTLEMENT_STALE_MINUTES
    cutoff = now - timedelta(minutes=stale_minutes)

    with get_db_session() as session:
        pending_rows = session.execute(
            select(ledger_transactions)
            .where(ledger_transactions.c.status == TransactionStatus.PENDING.value)
            .where(ledger_transactions.c.type.in_(SETTLED_TYPES))
            .where(ledger_transactions.c.created_at <= cutoff)
            .order_by(ledger_transactions.c.id)
        ).all()
        failed_rows = session.execute(
            select(ledger_transactions)
            .where(ledger_transactions.c.status == TransactionStatus.FAILED.value)
            .where(ledger_transactions.c.type.in_(UNSETTLED_FAILURE_TYPES))
            .order_by(ledger_transactions.c.id)
        ).all()

    stale_pending = [_finding(row_to_transaction(r)) for r in pending_rows]
    failed_settlements = [_finding(row_to_transaction(r)) for r in failed_rows]

    for finding in stale_pending:
        log_event(
            "warning",
            "settlement_sweep.stale_pending",
            user_id=finding["user_id"],
            event_type="settlement_sweep",
            extra={"transaction_id": finding["transaction_id"], "type": finding["type"]},
        )
    for finding in failed_settlements:
        log_event(
            "warning",
            "settlement_sweep.failed_settlement",
            user_id=finding["user_id"],
            event_type="settlement_sweep",
            extra={"transaction_id": finding["transaction_id"], "type": finding["type"]},
        )

    return {
        "stale_pending": stale_pending,
        "failed_settlements": failed_settlements,
        "checked_at": now.isoformat(),
    }
