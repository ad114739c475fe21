"""
hostportal/features/dns_plans/engine.py

DNS plan reconciliation engine.

Handles:
- Purchase (balance check, pending ledger row, debit, subscription)
- Plan change (proration, domain eviction, supersession, post-commit settlement)
- Cancel
- Admin token grants

Every workflow keeps external calls outside of locked local transactions.
The local commit of a plan change is the point of no return: token
settlement after it is best-effort and reported as a warning.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any, Tuple

from hostportal.core.config import settings
from hostportal.core.database import get_db_session
from hostportal.core.errors import (
    AccountNotLinkedError,
    AlreadyOnPlanError,
    AlreadySubscribedError,
    ConflictingPlanError,
    ExternalBalanceUnavailableError,
    ExternalCreditFailedError,
    ExternalDebitFailedError,
    InsufficientFundsError,
    NoActiveSubscriptionError,
    NotFoundError,
    SubscriptionChangedError,
    ValidationError,
)
from hostportal.core.logging import log_event
from hostportal.features.dns_plans.auto_deduction import credit_with_detection
from hostportal.features.dns_plans.billing_clock import (
    amount_to_tokens,
    as_utc,
    cycle_end,
    days_remaining_in_cycle,
    next_cycle_start,
    prorate,
    requires_settlement,
    tokens_to_amount,
    utc_now,
)
from hostportal.features.dns_plans.catalog import get_plan, get_plans_by_id
from hostportal.features.dns_plans.eviction import (
    EvictionResult,
    delete_external_resources,
    delete_local_domains,
    select_domains_to_keep,
)
from hostportal.features.dns_plans.ledger import record_transaction, settle_transaction
from hostportal.features.dns_plans.subscriptions import (
    get_active_subscriptions,
    get_subscription,
    get_user,
    insert_subscription,
    list_user_domains,
    lock_user,
    set_subscription_status,
)
from hostportal.features.provisioning.provider import ProvisioningProvider
from hostportal.features.tokens.provider import TokenAccountError, TokenAccountProvider
from hostportal.models.dns_plan import DnsPlan
from hostportal.models.subscription import (
    Subscription,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)


@dataclass
class PurchaseResult:
    subscription: Subscription
    plan: DnsPlan
    tokens_debited: int
    transaction_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription": self.subscription.model_dump(mode="json"),
            "plan": self.plan.summary(),
            "tokens_debited": self.tokens_debited,
            "transaction_id": self.transaction_id,
        }


@dataclass
class ChangeResult:
    old_plan: DnsPlan
    new_plan: DnsPlan
    prorated_amount: Decimal
    is_upgrade: bool
    days_remaining: int
    subscription: Subscription
    message: str
    domains_removed: int = 0
    eviction: EvictionResult = field(default_factory=EvictionResult)
    transaction_id: Optional[int] = None
    settlement_warning: Optional[str] = None

    @property
    def is_downgrade(self) -> bool:
        return self.prorated_amount < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "old_plan": self.old_plan.summary(),
            "new_plan": self.new_plan.summary(),
            "prorated_amount": str(self.prorated_amount),
            "is_upgrade": self.is_upgrade,
            "days_remaining": self.days_remaining,
            "domains_removed": self.domains_removed,
            "eviction": self.eviction.to_dict(),
            "transaction_id": self.transaction_id,
            "settlement_warning": self.settlement_warning,
            "subscription": self.subscription.model_dump(mode="json"),
            "message": self.message,
        }


def _read_balance(token_client: TokenAccountProvider, external_id: str, *, user_id: str) -> int:
    try:
        return token_client.get_balance(external_id)
    except TokenAccountError as e:
        log_event(
            "error",
            "dns_plan.balance_read_failed",
            user_id=user_id,
            event_type="dns_plan",
            error_code="external_balance_unavailable",
            extra={"error": str(e)},
        )
        raise ExternalBalanceUnavailableError(f"Unable to read token balance: {e}") from e


def _reject_existing(active: List[Subscription], plan_id: int) -> None:
    if not active:
        return
    current_plan_ids = [s.plan_id for s in active]
    if plan_id in current_plan_ids:
        raise AlreadySubscribedError("You already have this DNS plan")
    raise ConflictingPlanError(
        "You already have an active DNS plan. Use the change plan option instead.",
        current_plan_ids=current_plan_ids,
    )


def _recheck_active(session, user_id: str, target_plan_id: int, expected_ids: List[int]) -> List[Subscription]:
    """Re-read the active set under the user lock; it must match what was priced."""
    active = get_active_subscriptions(session, user_id)
    if not active:
        raise NoActiveSubscriptionError("No active DNS plan to change")
    if any(s.plan_id == target_plan_id for s in active):
        raise AlreadyOnPlanError("You are already on this DNS plan")
    active_ids = sorted(s.id for s in active)
    if active_ids != expected_ids:
        raise SubscriptionChangedError(
            "Your DNS plan changed while this request was in progress. Please try again.",
            details={"expected_subscription_ids": expected_ids, "active_subscription_ids": active_ids},
        )
    return active


def _refund_after_conflict(
    token_client: TokenAccountProvider,
    *,
    user_id: str,
    external_id: str,
    plan: DnsPlan,
    purchase_transaction_id: int,
) -> Tuple[bool, int]:
    """
    Compensate a debit whose subscription lost the race to another request.

    Returns (refunded, refund transaction id). A failed refund row is left
    for the settlement sweep.
    """
    with get_db_session() as session:
        refund_id = record_transaction(
            session,
            user_id=user_id,
            amount=plan.price,
            type=TransactionType.PLAN_REFUND,
            description=f"DNS plan purchase refund: {plan.name} (transaction #{purchase_transaction_id})",
        )

    try:
        outcome = credit_with_detection(
            token_client,
            user_id=user_id,
            external_id=external_id,
            tokens=plan.monthly_price_cents,
            transaction_id=refund_id,
            reason="purchase reversal",
        )
    except ExternalCreditFailedError:
        with get_db_session() as session:
            settle_transaction(session, refund_id, TransactionStatus.FAILED)
        return False, refund_id

    with get_db_session() as session:
        settle_transaction(
            session,
            refund_id,
            TransactionStatus.COMPLETED,
            external_reference=outcome.operation.external_operation_id,
        )
    return True, refund_id


def purchase(
    user_id: str,
    plan_id: int,
    *,
    token_client: TokenAccountProvider,
    now: Optional[datetime] = None,
) -> PurchaseResult:
    """
    Buy a DNS plan for a user with no active subscription.

    Raises:
        NotFoundError, AlreadySubscribedError, ConflictingPlanError,
        AccountNotLinkedError, InsufficientFundsError,
        ExternalBalanceUnavailableError, ExternalDebitFailedError
    """
    now = as_utc(now) if now else utc_now()

    with get_db_session() as session:
        user = get_user(session, user_id)
        plan = get_plan(session, plan_id)
        if not plan:
            raise NotFoundError("DNS plan not found or inactive")
        _reject_existing(get_active_subscriptions(session, user_id), plan.id)
        external_id = user.token_relation_id

    end_date = cycle_end(now)
    tokens_required = plan.monthly_price_cents

    if plan.is_free:
        with get_db_session() as session:
            lock_user(session, user_id)
            _reject_existing(get_active_subscriptions(session, user_id), plan.id)
            transaction_id = record_transaction(
                session,
                user_id=user_id,
                amount=Decimal("0.00"),
                type=TransactionType.PLAN_PURCHASE,
                status=TransactionStatus.COMPLETED,
                description=f"DNS plan purchase: {plan.name} (free)",
            )
            subscription = insert_subscription(
                session,
                user_id=user_id,
                plan_id=plan.id,
                start_date=now,
                end_date=end_date,
                next_payment_date=end_date,
                last_payment_date=None,
            )
        log_event(
            "info",
            "dns_plan.purchase.completed",
            user_id=user_id,
            event_type="dns_plan.purchase",
            extra={"plan_id": plan.id, "transaction_id": transaction_id, "tokens": 0},
        )
        return PurchaseResult(subscription=subscription, plan=plan, tokens_debited=0, transaction_id=transaction_id)

    if not external_id:
        raise AccountNotLinkedError("No token account is linked to this user")

    balance = _read_balance(token_client, external_id, user_id=user_id)
    if balance < tokens_required:
        raise InsufficientFundsError(
            f"Insufficient tokens: {tokens_required} required, {balance} available",
            required=tokens_required,
            available=balance,
        )

    # Evidence of the attempt survives a crash after the debit
    with get_db_session() as session:
        transaction_id = record_transaction(
            session,
            user_id=user_id,
            amount=-plan.price,
            type=TransactionType.PLAN_PURCHASE,
            description=f"DNS plan purchase: {plan.name}",
        )

    try:
        operation = token_client.debit(external_id, tokens_required, str(transaction_id))
    except TokenAccountError as e:
        with get_db_session() as session:
            settle_transaction(
                session,
                transaction_id,
                TransactionStatus.FAILED,
                description=f"DNS plan purchase: {plan.name} (debit failed: {e})",
            )
        log_event(
            "error",
            "dns_plan.purchase.debit_failed",
            user_id=user_id,
            event_type="dns_plan.purchase",
            error_code="external_debit_failed",
            extra={"plan_id": plan.id, "transaction_id": transaction_id, "error": str(e)},
        )
        raise ExternalDebitFailedError(
            f"Failed to debit {tokens_required} tokens: {e}",
            transaction_id=transaction_id,
        ) from e

    try:
        with get_db_session() as session:
            lock_user(session, user_id)
            _reject_existing(get_active_subscriptions(session, user_id), plan.id)
            settle_transaction(
                session,
                transaction_id,
                TransactionStatus.COMPLETED,
                external_reference=operation.external_operation_id,
            )
            subscription = insert_subscription(
                session,
                user_id=user_id,
                plan_id=plan.id,
                start_date=now,
                end_date=end_date,
                next_payment_date=next_cycle_start(now),
                last_payment_date=now,
            )
    except (AlreadySubscribedError, ConflictingPlanError) as e:
        # The debit did happen; the refund is its own ledger row
        with get_db_session() as session:
            settle_transaction(
                session,
                transaction_id,
                TransactionStatus.COMPLETED,
                description=f"DNS plan purchase: {plan.name} (superseded by concurrent purchase)",
                external_reference=operation.external_operation_id,
            )
        refunded, refund_transaction_id = _refund_after_conflict(
            token_client,
            user_id=user_id,
            external_id=external_id,
            plan=plan,
            purchase_transaction_id=transaction_id,
        )
        log_event(
            "warning",
            "dns_plan.purchase.lost_race",
            user_id=user_id,
            event_type="dns_plan.purchase",
            error_code=e.code,
            extra={
                "plan_id": plan.id,
                "transaction_id": transaction_id,
                "refund_transaction_id": refund_transaction_id,
                "refunded": refunded,
            },
        )
        e.details["refunded"] = refunded
        e.details["transaction_id"] = transaction_id
        e.details["refund_transaction_id"] = refund_transaction_id
        raise

    log_event(
        "info",
        "dns_plan.purchase.completed",
        user_id=user_id,
        event_type="dns_plan.purchase",
        extra={"plan_id": plan.id, "transaction_id": transaction_id, "tokens": tokens_required},
    )
    return PurchaseResult(
        subscription=subscription,
        plan=plan,
        tokens_debited=tokens_required,
        transaction_id=transaction_id,
    )


def change(
    user_id: str,
    target_plan_id: int,
    keep_domain_ids: Optional[List[int]] = None,
    *,
    token_client: TokenAccountProvider,
    provisioning_client: Optional[ProvisioningProvider] = None,
    now: Optional[datetime] = None,
    max_workers: Optional[int] = None,
) -> ChangeResult:
    """
    Upgrade or downgrade the user's active DNS plan.

    Preconditions are all checked before any mutation or external call.
    Settlement failures after the local commit come back as
    settlement_warning instead of being raised.

    Raises:
        NotFoundError, NoActiveSubscriptionError, AlreadyOnPlanError,
        AccountNotLinkedError, InsufficientFundsError,
        ExternalBalanceUnavailableError, InvalidDomainSelectionError,
        SubscriptionChangedError
    """
    now = as_utc(now) if now else utc_now()
    if max_workers is None:
        max_workers = settings.DNS_EVICTION_MAX_WORKERS

    with get_db_session() as session:
        user = get_user(session, user_id)
        target = get_plan(session, target_plan_id)
        if not target:
            raise NotFoundError("DNS plan not found or inactive")
        active = get_active_subscriptions(session, user_id)
        if not active:
            raise NoActiveSubscriptionError("No active DNS plan to change")
        if any(s.plan_id == target.id for s in active):
            raise AlreadyOnPlanError("You are already on this DNS plan")
        plans = get_plans_by_id(session, [s.plan_id for s in active])
        domains = list_user_domains(session, user_id)
        external_id = user.token_relation_id

    # Several actives means an earlier violation; the priciest one is current
    current = max(
        (plans[s.plan_id] for s in active if s.plan_id in plans),
        key=lambda p: p.monthly_price_cents,
    )

    days_remaining = days_remaining_in_cycle(now)
    delta = prorate(current.monthly_price_cents, target.monthly_price_cents, now)
    is_upgrade = delta > 0
    is_downgrade = delta < 0
    needs_settlement = requires_settlement(delta)
    tokens = amount_to_tokens(delta)

    if is_upgrade and needs_settlement:
        if not external_id:
            raise AccountNotLinkedError("No token account is linked to this user")
        balance = _read_balance(token_client, external_id, user_id=user_id)
        if balance < tokens:
            raise InsufficientFundsError(
                f"Insufficient tokens for upgrade: {tokens} required, {balance} available",
                required=tokens,
                available=balance,
            )

    expected_ids = sorted(s.id for s in active)

    domains_to_remove = []
    kept = domains
    # Only downgrades shrink the domain set; an upgrade never evicts
    needs_eviction = (
        not is_upgrade
        and target.max_domains < current.max_domains
        and len(domains) > target.max_domains
    )
    if needs_eviction:
        kept, domains_to_remove = select_domains_to_keep(domains, keep_domain_ids, target.max_domains)

    eviction = EvictionResult()
    if needs_eviction:
        # External deletes cannot be undone, so confirm the priced plan is still current
        with get_db_session() as session:
            lock_user(session, user_id)
            _recheck_active(session, user_id, target.id, expected_ids)
        eviction = delete_external_resources(
            user_id,
            [d.name for d in kept],
            provisioning_client,
            max_workers=max_workers,
        )

    end_date = cycle_end(now)
    next_payment = end_date if target.is_free else next_cycle_start(now)
    transaction_type = TransactionType.PLAN_UPGRADE if is_upgrade else TransactionType.PLAN_DOWNGRADE
    direction = "upgrade" if is_upgrade else "downgrade"

    transaction_id = None
    with get_db_session() as session:
        lock_user(session, user_id)
        active = _recheck_active(session, user_id, target.id, expected_ids)

        if needs_settlement:
            transaction_id = record_transaction(
                session,
                user_id=user_id,
                amount=-delta,
                type=transaction_type,
                description=(
                    f"DNS plan {direction}: {current.name} -> {target.name} "
                    f"(prorated {days_remaining}/30 days)"
                ),
            )
        if domains_to_remove:
            delete_local_domains(session, user_id, domains_to_remove, eviction, transaction_id=transaction_id)

        set_subscription_status(session, [s.id for s in active], SubscriptionStatus.CANCELLED, now)
        subscription = insert_subscription(
            session,
            user_id=user_id,
            plan_id=target.id,
            start_date=now,
            end_date=end_date,
            next_payment_date=next_payment,
            last_payment_date=now,
        )

    log_event(
        "info",
        "dns_plan.change.committed",
        user_id=user_id,
        event_type="dns_plan.change",
        extra={
            "from_plan_id": current.id,
            "to_plan_id": target.id,
            "prorated_amount": str(delta),
            "transaction_id": transaction_id,
            "domains_removed": len(domains_to_remove),
            "eviction_failures": len(eviction.failed),
        },
    )

    settlement_warning = None
    if needs_settlement:
        settlement_warning = _settle_change(
            token_client,
            user_id=user_id,
            external_id=external_id,
            tokens=tokens,
            is_upgrade=is_upgrade,
            transaction_id=transaction_id,
        )

    if is_upgrade:
        message = f"Upgraded from {current.name} to {target.name}"
    elif is_downgrade:
        message = f"Downgraded from {current.name} to {target.name}"
    else:
        message = f"Switched from {current.name} to {target.name}"
    if eviction.has_failures:
        message += f"; {len(eviction.failed)} domain(s) could not be removed automatically"

    return ChangeResult(
        old_plan=current,
        new_plan=target,
        prorated_amount=delta,
        is_upgrade=is_upgrade,
        days_remaining=days_remaining,
        subscription=subscription,
        message=message,
        domains_removed=len(domains_to_remove),
        eviction=eviction,
        transaction_id=transaction_id,
        settlement_warning=settlement_warning,
    )


def _settle_change(
    token_client: TokenAccountProvider,
    *,
    user_id: str,
    external_id: Optional[str],
    tokens: int,
    is_upgrade: bool,
    transaction_id: int,
) -> Optional[str]:
    """Move tokens for a committed plan change. Returns a warning on failure."""
    error = None
    external_reference = None

    if not external_id:
        error = "no token account is linked to this user"
    elif is_upgrade:
        try:
            operation = token_client.debit(external_id, tokens, str(transaction_id))
            external_reference = operation.external_operation_id
        except TokenAccountError as e:
            error = f"debit of {tokens} tokens failed: {e}"
    else:
        try:
            outcome = credit_with_detection(
                token_client,
                user_id=user_id,
                external_id=external_id,
                tokens=tokens,
                transaction_id=transaction_id,
                reason="plan downgrade refund",
            )
            external_reference = outcome.operation.external_operation_id
        except ExternalCreditFailedError as e:
            error = f"refund of {tokens} tokens failed: {e.message}"

    with get_db_session() as session:
        if error is None:
            settle_transaction(
                session,
                transaction_id,
                TransactionStatus.COMPLETED,
                external_reference=external_reference,
            )
        else:
            settle_transaction(session, transaction_id, TransactionStatus.FAILED)

    if error is None:
        return None

    log_event(
        "error",
        "dns_plan.change.settlement_failed",
        user_id=user_id,
        event_type="dns_plan.change",
        error_code="external_debit_failed" if is_upgrade else "external_credit_failed",
        extra={"transaction_id": transaction_id, "tokens": tokens, "error": error},
    )
    return (
        f"Your plan was changed, but token settlement did not complete ({error}). "
        f"Support has been notified; reference transaction #{transaction_id}."
    )


def cancel(user_id: str, subscription_id: int, *, now: Optional[datetime] = None) -> Subscription:
    """
    Cancel an active subscription. No money moves and no ledger row is written.

    Raises:
        NotFoundError: Subscription missing, not the user's, or not active
    """
    now = as_utc(now) if now else utc_now()
    with get_db_session() as session:
        lock_user(session, user_id)
        subscription = get_subscription(session, subscription_id)
        if (
            not subscription
            or subscription.user_id != user_id
            or subscription.status != SubscriptionStatus.ACTIVE
        ):
            raise NotFoundError("Active subscription not found")
        set_subscription_status(session, [subscription.id], SubscriptionStatus.CANCELLED, now)
        cancelled = get_subscription(session, subscription.id)

    log_event(
        "info",
        "dns_plan.cancelled",
        user_id=user_id,
        event_type="dns_plan.cancel",
        extra={"subscription_id": subscription_id, "plan_id": subscription.plan_id},
    )
    return cancelled


def grant_tokens(
    user_id: str,
    amount_cents: int,
    reason: str,
    *,
    token_client: TokenAccountProvider,
) -> Dict[str, Any]:
    """
    Credit tokens to a user's account (admin operation).

    Raises:
        ValidationError, NotFoundError, AccountNotLinkedError, ExternalCreditFailedError
    """
    if amount_cents <= 0:
        raise ValidationError("Token grant must be positive")

    with get_db_session() as session:
        user = get_user(session, user_id)
        external_id = user.token_relation_id
    if not external_id:
        raise AccountNotLinkedError("No token account is linked to this user")

    with get_db_session() as session:
        transaction_id = record_transaction(
            session,
            user_id=user_id,
            amount=tokens_to_amount(amount_cents),
            type=TransactionType.TOKEN_CREDIT,
            description=f"Token credit: {reason}",
        )

    try:
        outcome = credit_with_detection(
            token_client,
            user_id=user_id,
            external_id=external_id,
            tokens=amount_cents,
            transaction_id=transaction_id,
            reason="token credit",
        )
    except ExternalCreditFailedError:
        with get_db_session() as session:
            settle_transaction(session, transaction_id, TransactionStatus.FAILED)
        raise

    with get_db_session() as session:
        settle_transaction(
            session,
            transaction_id,
            TransactionStatus.COMPLETED,
            external_reference=outcome.operation.external_operation_id,
        )

    log_event(
        "info",
        "tokens.granted",
        user_id=user_id,
        event_type="tokens.grant",
        extra={"transaction_id": transaction_id, "tokens": amount_cents},
    )
    return {
        "transaction_id": transaction_id,
        "tokens_credited": amount_cents,
        "initial_balance": outcome.initial_balance,
        "updated_balance": outcome.updated_balance,
        "auto_deduction_transaction_id": outcome.auto_deduction_transaction_id,
    }
