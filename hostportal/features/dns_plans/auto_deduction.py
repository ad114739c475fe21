"""
Negative-balance auto-deduction detection.

When a token account is negative, the external system silently applies part
of any incoming credit to the debt. Crediting through credit_with_detection
reads the balance on both sides of the credit and records the swallowed part
as an auto_deduction ledger row, so the local ledger explains where the
refunded money went.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from hostportal.core.database import get_db_session
from hostportal.core.errors import ExternalCreditFailedError
from hostportal.core.logging import log_event
from hostportal.features.dns_plans.billing_clock import tokens_to_amount
from hostportal.features.dns_plans.ledger import record_transaction
from hostportal.features.tokens.provider import TokenAccountError, TokenAccountProvider, TokenOperation
from hostportal.models.subscription import TransactionStatus, TransactionType


@dataclass
class CreditOutcome:
    operation: TokenOperation
    initial_balance: Optional[int]
    updated_balance: Optional[int]
    auto_deduction_transaction_id: Optional[int] = None

    @property
    def auto_deducted(self) -> bool:
        return self.auto_deduction_transaction_id is not None


def _read_balance(token_client: TokenAccountProvider, external_id: str, *, user_id: str, transaction_id: int, stage: str) -> Optional[int]:
    try:
        return token_client.get_balance(external_id)
    except TokenAccountError as e:
        log_event(
            "warning",
            "auto_deduction.balance_read_failed",
            user_id=user_id,
            event_type="auto_deduction",
            error_code="token_account_error",
            extra={"transaction_id": transaction_id, "stage": stage, "error": str(e)},
        )
        return None


def credit_with_detection(
    token_client: TokenAccountProvider,
    *,
    user_id: str,
    external_id: str,
    tokens: int,
    transaction_id: int,
    reason: str,
) -> CreditOutcome:
    """
    Credit tokens and record any auto-deduction against a negative balance.

    Args:
        transaction_id: Ledger row that originated the credit (used as reference)
        reason: Short label for descriptions, e.g. "plan downgrade refund"

    Raises:
        ExternalCreditFailedError: If the credit itself fails
    """
    initial = _read_balance(token_client, external_id, user_id=user_id, transaction_id=transaction_id, stage="before")

    try:
        operation = token_client.credit(external_id, tokens, str(transaction_id))
    except TokenAccountError as e:
        log_event(
            "error",
            "auto_deduction.credit_failed",
            user_id=user_id,
            event_type="auto_deduction",
            error_code="external_credit_failed",
            extra={"transaction_id": transaction_id, "tokens": tokens, "error": str(e)},
        )
        raise ExternalCreditFailedError(
            f"Failed to credit {tokens} tokens: {e}",
            transaction_id=transaction_id,
        ) from e

    updated = _read_balance(token_client, external_id, user_id=user_id, transaction_id=transaction_id, stage="after")
    outcome = CreditOutcome(operation=operation, initial_balance=initial, updated_balance=updated)

    if initial is None or updated is None or initial >= 0:
        return outcome

    deducted = tokens_to_amount(abs(initial))
    with get_db_session() as session:
        outcome.auto_deduction_transaction_id = record_transaction(
            session,
            user_id=user_id,
            amount=-deducted,
            type=TransactionType.AUTO_DEDUCTION,
            status=TransactionStatus.COMPLETED,
            description=(
                f"Auto-deduction of ${deducted} against negative token balance "
                f"during {reason} (transaction #{transaction_id})"
            ),
            external_reference=operation.external_operation_id,
        )

    log_event(
        "warning",
        "auto_deduction.detected",
        user_id=user_id,
        event_type="auto_deduction",
        extra={
            "transaction_id": transaction_id,
            "initial_balance": initial,
            "updated_balance": updated,
            "deducted_amount": str(Decimal(deducted)),
        },
    )
    return outcome
