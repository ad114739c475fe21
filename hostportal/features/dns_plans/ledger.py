"""
Local monetary ledger for DNS plan billing.

Rows are appended by the workflows that own them. The only permitted
mutation is settling a row the same workflow created (pending -> completed
or failed), plus annotating its description and external reference.
"""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from hostportal.core.database import get_db_session, ledger_transactions
from hostportal.models.subscription import LedgerTransaction, TransactionStatus, TransactionType

PAYMENT_METHOD = "virtfusion_tokens"


def row_to_transaction(row) -> LedgerTransaction:
    return LedgerTransaction(
        id=row.id,
        user_id=row.user_id,
        amount=Decimal(row.amount),
        type=TransactionType(row.type),
        status=TransactionStatus(row.status),
        description=row.description,
        payment_method=row.payment_method,
        external_reference=row.external_reference,
        created_at=row.created_at,
    )


def record_transaction(
    session: Session,
    *,
    user_id: str,
    amount: Decimal,
    type: TransactionType,
    description: str,
    status: TransactionStatus = TransactionStatus.PENDING,
    external_reference: Optional[str] = None,
) -> int:
    """Append a ledger row and return its id (caller owns the commit)."""
    result = session.execute(
        insert(ledger_transactions).values(
            user_id=user_id,
            amount=Decimal(amount),
            type=type.value,
            status=status.value,
            description=description,
            payment_method=PAYMENT_METHOD,
            external_reference=external_reference,
        )
    )
    return int(result.inserted_primary_key[0])


def settle_transaction(
    session: Session,
    transaction_id: int,
    status: TransactionStatus,
    *,
    description: Optional[str] = None,
    external_reference: Optional[str] = None,
) -> None:
    values = {"status": status.value}
    if description is not None:
        values["description"] = description
    if external_reference is not None:
        values["external_reference"] = external_reference
    session.execute(
        update(ledger_transactions)
        .where(ledger_transactions.c.id == transaction_id)
        .values(**values)
    )


def get_transaction(session: Session, transaction_id: int) -> Optional[LedgerTransaction]:
    row = session.execute(
        select(ledger_transactions).where(ledger_transactions.c.id == transaction_id)
    ).first()
    return row_to_transaction(row) if row else None


def get_user_ledger(user_id: str, limit: int = 20) -> List[LedgerTransaction]:
    """Recent ledger rows for a user, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(ledger_transactions)
            .where(ledger_transactions.c.user_id == user_id)
            .order_by(ledger_transactions.c.created_at.desc(), ledger_transactions.c.id.desc())
            .limit(limit)
        ).all()
        return [row_to_transaction(row) for row in rows]
