"""
hostportal/models/subscription.py

Subscription and ledger transaction models.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class TransactionType(str, Enum):
    PLAN_PURCHASE = "plan_purchase"
    PLAN_UPGRADE = "plan_upgrade"
    PLAN_DOWNGRADE = "plan_downgrade"
    PLAN_REFUND = "plan_refund"
    AUTO_DEDUCTION = "auto_deduction"
    PLAN_RENEWAL = "plan_renewal"
    PLAN_RENEWAL_FAILED = "plan_renewal_failed"
    TOKEN_CREDIT = "token_credit"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Subscription(BaseModel):
    """
    A user's binding to a DNS plan over a billing window.

    Constraint: at most one ACTIVE subscription per user. Plan changes
    cancel the old row and insert a new one.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    plan_id: int
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    auto_renew: bool
    last_payment_date: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None


class LedgerTransaction(BaseModel):
    """Monetary event; amount is signed, negative means the user paid."""
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    amount: Decimal
    type: TransactionType
    status: TransactionStatus
    description: str
    payment_method: Optional[str] = None
    external_reference: Optional[str] = None
    created_at: Optional[datetime] = None
