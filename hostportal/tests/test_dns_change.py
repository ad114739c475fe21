"""
Plan change workflow: proration, supersession, eviction, settlement.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import insert, select, update

from hostportal.core.database import (
    get_db_session,
    dns_domains,
    dns_plan_subscriptions,
    dns_plans,
    ledger_transactions,
)
from hostportal.core.errors import (
    AlreadyOnPlanError,
    InsufficientFundsError,
    InvalidDomainSelectionError,
    NoActiveSubscriptionError,
    NotFoundError,
    SubscriptionChangedError,
)
from hostportal.features.dns_plans.billing_clock import prorate
from hostportal.features.dns_plans.engine import change, purchase

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _insert_plan(name, price_cents, max_domains):
    with get_db_session() as session:
        result = session.execute(
            insert(dns_plans).values(
                name=name,
                monthly_price_cents=price_cents,
                max_domains=max_domains,
                max_records=20,
                features=[],
                is_active=True,
                display_order=9,
            )
        )
        return int(result.inserted_primary_key[0])


def _subs(user_id="user_alice"):
    with get_db_session() as session:
        return session.execute(
            select(dns_plan_subscriptions)
            .where(dns_plan_subscriptions.c.user_id == user_id)
            .order_by(dns_plan_subscriptions.c.id)
        ).all()


def _ledger(user_id="user_alice", type_=None):
    query = select(ledger_transactions).where(ledger_transactions.c.user_id == user_id)
    if type_:
        query = query.where(ledger_transactions.c.type == type_)
    with get_db_session() as session:
        return session.execute(query.order_by(ledger_transactions.c.id)).all()


def _domain_names(user_id="user_alice"):
    with get_db_session() as session:
        return [r.name for r in session.execute(
            select(dns_domains.c.name).where(dns_domains.c.user_id == user_id).order_by(dns_domains.c.id)
        ).all()]


@pytest.fixture
def on_basic(plans, make_user, token_account):
    make_user()
    token_account.balances["vf-alice"] = 5000
    purchase("user_alice", plans["Basic"].id, token_client=token_account, now=NOW)
    return plans


@pytest.fixture
def on_pro(plans, make_user, token_account):
    make_user()
    token_account.balances["vf-alice"] = 5000
    purchase("user_alice", plans["Pro"].id, token_client=token_account, now=NOW)
    return plans


def test_upgrade_debits_prorated_tokens_and_supersedes(on_basic, token_account):
    result = change("user_alice", on_basic["Pro"].id, token_client=token_account, now=NOW)

    assert result.is_upgrade is True
    assert result.prorated_amount == Decimal("7.33")
    assert result.days_remaining == 22
    assert result.settlement_warning is None
    assert token_account.debits[-1] == ("vf-alice", 733, str(result.transaction_id))

    subs = _subs()
    assert [(s.plan_id, s.status, bool(s.auto_renew)) for s in subs] == [
        (on_basic["Basic"].id, "cancelled", False),
        (on_basic["Pro"].id, "active", True),
    ]

    upgrade = _ledger(type_="plan_upgrade")
    assert len(upgrade) == 1
    assert Decimal(upgrade[0].amount) == Decimal("-7.33")
    assert upgrade[0].status == "completed"


def test_exactly_one_active_subscription_after_change(on_basic, token_account):
    change("user_alice", on_basic["Pro"].id, token_client=token_account, now=NOW)
    change("user_alice", on_basic["Enterprise"].id, token_client=token_account, now=NOW)

    active = [s for s in _subs() if s.status == "active"]
    assert len(active) == 1
    assert active[0].plan_id == on_basic["Enterprise"].id


def test_upgrade_without_funds_fails_closed(on_basic, token_account):
    token_account.balances["vf-alice"] = 100

    with pytest.raises(InsufficientFundsError) as exc:
        change("user_alice", on_basic["Pro"].id, token_client=token_account, now=NOW)

    assert exc.value.details["required"] == 733
    assert [s.status for s in _subs()] == ["active"]
    assert _ledger(type_="plan_upgrade") == []


def test_downgrade_refunds_prorated_tokens(on_pro, token_account):
    result = change("user_alice", on_pro["Basic"].id, token_client=token_account, now=NOW)

    assert result.is_upgrade is False
    assert result.is_downgrade is True
    assert result.prorated_amount == Decimal("-7.33")
    assert token_account.credits == [("vf-alice", 733, str(result.transaction_id))]

    row = _ledger(type_="plan_downgrade")[0]
    assert Decimal(row.amount) == Decimal("7.33")
    assert row.status == "completed"
    assert _ledger(type_="auto_deduction") == []


def test_downgrade_refund_into_negative_balance_records_auto_deduction(on_pro, token_account):
    token_account.balances["vf-alice"] = -250

    result = change("user_alice", on_pro["Basic"].id, token_client=token_account, now=NOW)

    assert result.settlement_warning is None
    deductions = _ledger(type_="auto_deduction")
    assert len(deductions) == 1
    assert Decimal(deductions[0].amount) == Decimal("-2.50")
    assert f"#{result.transaction_id}" in deductions[0].description


def test_settlement_failure_keeps_plan_change_and_warns(on_basic, token_account):
    token_account.fail_debit = True

    result = change("user_alice", on_basic["Pro"].id, token_client=token_account, now=NOW)

    assert result.settlement_warning is not None
    assert str(result.transaction_id) in result.settlement_warning
    assert result.subscription.plan_id == on_basic["Pro"].id
    assert _ledger(type_="plan_upgrade")[0].status == "failed"


def test_refund_failure_keeps_plan_change_and_warns(on_pro, token_account):
    token_account.fail_credit = True

    result = change("user_alice", on_pro["Basic"].id, token_client=token_account, now=NOW)

    assert result.settlement_warning is not None
    assert _ledger(type_="plan_downgrade")[0].status == "failed"
    assert [s.status for s in _subs()] == ["cancelled", "active"]


def test_proration_ignores_stored_end_date(plans, make_user, token_account):
    """Same plans at the same instant prorate identically."""
    for user, relation in (("user_alice", "vf-alice"), ("user_bob", "vf-bob")):
        make_user(user, relation)
        token_account.balances[relation] = 5000
        purchase(user, plans["Basic"].id, token_client=token_account, now=NOW)

    with get_db_session() as session:
        session.execute(
            update(dns_plan_subscriptions)
            .where(dns_plan_subscriptions.c.user_id == "user_bob")
            .values(end_date=datetime(2099, 12, 31, tzinfo=timezone.utc))
        )

    first = change("user_alice", plans["Pro"].id, token_client=token_account, now=NOW)
    second = change("user_bob", plans["Pro"].id, token_client=token_account, now=NOW)

    assert first.prorated_amount == second.prorated_amount == prorate(500, 1500, NOW)


def test_change_to_current_plan_is_rejected(on_basic, token_account):
    with pytest.raises(AlreadyOnPlanError):
        change("user_alice", on_basic["Basic"].id, token_client=token_account, now=NOW)


def test_change_without_subscription_is_rejected(plans, make_user, token_account):
    make_user()
    with pytest.raises(NoActiveSubscriptionError):
        change("user_alice", plans["Pro"].id, token_client=token_account, now=NOW)


def test_change_to_unknown_plan_is_not_found(on_basic, token_account):
    with pytest.raises(NotFoundError):
        change("user_alice", 9999, token_client=token_account, now=NOW)


def test_downgrade_with_wrong_keep_count_is_rejected(on_basic, add_domains, token_account, dns_host):
    """3 domains, max 5 -> 2, one id kept: rejected, nothing touched."""
    starter_id = _insert_plan("Starter", 200, 2)
    ids = add_domains("user_alice", ["a.example.com", "b.example.com", "c.example.com"], [101, 102, 103])
    for i, name in zip([101, 102, 103], ["a.example.com", "b.example.com", "c.example.com"]):
        dns_host.add(i, name)

    with pytest.raises(InvalidDomainSelectionError) as exc:
        change(
            "user_alice",
            starter_id,
            keep_domain_ids=[ids[0]],
            token_client=token_account,
            provisioning_client=dns_host,
            now=NOW,
        )

    assert exc.value.details["required"] == 2
    assert len(_domain_names()) == 3
    assert dns_host.deleted == []
    assert token_account.credits == []
    assert [s.status for s in _subs()] == ["active"]


def test_downgrade_with_foreign_domain_ids_is_rejected(on_basic, make_user, add_domains, token_account, dns_host):
    starter_id = _insert_plan("Starter", 200, 2)
    mine = add_domains("user_alice", ["a.example.com", "b.example.com", "c.example.com"])
    make_user("user_bob", "vf-bob")
    theirs = add_domains("user_bob", ["bob.example.com"])

    with pytest.raises(InvalidDomainSelectionError):
        change(
            "user_alice",
            starter_id,
            keep_domain_ids=[mine[0], theirs[0]],
            token_client=token_account,
            provisioning_client=dns_host,
            now=NOW,
        )


def test_downgrade_evicts_everything_not_kept(on_basic, add_domains, token_account, dns_host):
    names = ["a.example.com", "b.example.com", "c.example.com"]
    ids = add_domains("user_alice", names, [101, 102, 103])
    for i, name in zip([101, 102, 103], names):
        dns_host.add(i, name)
    dns_host.add(104, "stray.example.com")

    result = change(
        "user_alice",
        on_basic["Free"].id,
        keep_domain_ids=[ids[0]],
        token_client=token_account,
        provisioning_client=dns_host,
        now=NOW,
    )

    assert _domain_names() == ["a.example.com"]
    assert dns_host.names() == ["a.example.com"]
    assert result.domains_removed == 2
    assert result.eviction.successful == ["b.example.com", "c.example.com", "stray.example.com"]
    assert result.eviction.has_failures is False
    assert result.prorated_amount == Decimal("-3.67")
    assert result.subscription.next_payment_date == result.subscription.end_date


def test_partial_eviction_failure_is_reported_not_raised(on_basic, add_domains, token_account, dns_host):
    names = ["a.example.com", "b.example.com", "c.example.com"]
    ids = add_domains("user_alice", names, [101, 102, 103])
    for i, name in zip([101, 102, 103], names):
        dns_host.add(i, name)
    dns_host.fail_delete_ids = {102}

    result = change(
        "user_alice",
        on_basic["Free"].id,
        keep_domain_ids=[ids[0]],
        token_client=token_account,
        provisioning_client=dns_host,
        now=NOW,
    )

    assert result.eviction.has_failures is True
    assert [f.name for f in result.eviction.failed] == ["b.example.com"]
    assert result.eviction.successful == ["c.example.com"]
    assert "could not be removed" in result.message
    # Local rows go regardless of the external outcome
    assert _domain_names() == ["a.example.com"]
    assert result.subscription.plan_id == on_basic["Free"].id


def test_downgrade_within_quota_needs_no_selection(on_pro, add_domains, token_account, dns_host):
    add_domains("user_alice", ["a.example.com", "b.example.com"])

    result = change(
        "user_alice",
        on_pro["Basic"].id,
        token_client=token_account,
        provisioning_client=dns_host,
        now=NOW,
    )

    assert result.domains_removed == 0
    assert len(_domain_names()) == 2
    assert result.eviction.to_dict()["successful"] == []


def test_change_result_serializes(on_basic, token_account):
    payload = change("user_alice", on_basic["Pro"].id, token_client=token_account, now=NOW).to_dict()

    assert payload["prorated_amount"] == "7.33"
    assert payload["old_plan"]["name"] == "Basic"
    assert payload["new_plan"]["name"] == "Pro"
    assert payload["eviction"]["has_failures"] is False
    assert payload["subscription"]["status"] == "active"


def test_upgrade_to_smaller_quota_never_evicts(on_basic, add_domains, token_account, dns_host):
    pricey_id = _insert_plan("Pricey", 2000, 2)
    names = ["a.example.com", "b.example.com", "c.example.com"]
    add_domains("user_alice", names, [101, 102, 103])
    for i, name in zip([101, 102, 103], names):
        dns_host.add(i, name)

    result = change(
        "user_alice",
        pricey_id,
        token_client=token_account,
        provisioning_client=dns_host,
        now=NOW,
    )

    assert result.is_upgrade is True
    assert result.domains_removed == 0
    assert _domain_names() == names
    assert dns_host.names() == names
    assert [d[1] for d in token_account.debits] == [500, 1100]


def test_change_committed_by_another_request_is_rejected(on_basic, token_account):
    """A rival upgrade lands while this request reads the balance."""
    real_get_balance = token_account.get_balance
    rival_done = []

    def balance_with_rival_change(external_id):
        if not rival_done:
            rival_done.append(True)
            change("user_alice", on_basic["Pro"].id, token_client=token_account, now=NOW)
        return real_get_balance(external_id)

    token_account.get_balance = balance_with_rival_change

    with pytest.raises(SubscriptionChangedError):
        change("user_alice", on_basic["Enterprise"].id, token_client=token_account, now=NOW)

    # Only the purchase and the rival Basic -> Pro upgrade were charged
    assert [d[1] for d in token_account.debits] == [500, 733]
    active = [r for r in _subs() if r.status == "active"]
    assert [r.plan_id for r in active] == [on_basic["Pro"].id]
    assert [r.description for r in _ledger(type_="plan_upgrade")] == [
        "DNS plan upgrade: Basic -> Pro (prorated 22/30 days)"
    ]


def test_plan_changed_before_eviction_leaves_host_untouched(on_pro, add_domains, token_account, dns_host, monkeypatch):
    from hostportal.features.dns_plans import engine as engine_module

    names = ["a.example.com", "b.example.com", "c.example.com"]
    ids = add_domains("user_alice", names, [101, 102, 103])
    for i, name in zip([101, 102, 103], names):
        dns_host.add(i, name)
    real_select = engine_module.select_domains_to_keep

    def select_with_rival_change(domains, keep_ids, max_domains):
        change("user_alice", on_pro["Enterprise"].id, token_client=token_account, now=NOW)
        return real_select(domains, keep_ids, max_domains)

    monkeypatch.setattr(engine_module, "select_domains_to_keep", select_with_rival_change)

    with pytest.raises(SubscriptionChangedError):
        change(
            "user_alice",
            on_pro["Free"].id,
            keep_domain_ids=[ids[0]],
            token_client=token_account,
            provisioning_client=dns_host,
            now=NOW,
        )

    assert dns_host.deleted == []
    assert _domain_names() == names
