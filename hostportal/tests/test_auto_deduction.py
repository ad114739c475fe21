"""Negative-balance auto-deduction detection."""
from decimal import Decimal

import pytest
from sqlalchemy import select

from hostportal.core.database import get_db_session, ledger_transactions
from hostportal.core.errors import AccountNotLinkedError, ExternalCreditFailedError, ValidationError
from hostportal.features.dns_plans.auto_deduction import credit_with_detection
from hostportal.features.dns_plans.engine import grant_tokens


def _rows(type_=None):
    query = select(ledger_transactions)
    if type_:
        query = query.where(ledger_transactions.c.type == type_)
    with get_db_session() as session:
        return session.execute(query.order_by(ledger_transactions.c.id)).all()


def test_negative_initial_balance_produces_one_deduction_row(make_user, token_account):
    """Initial -250, credit 500: one auto_deduction row of -2.50."""
    make_user()
    token_account.balances["vf-alice"] = -250

    outcome = credit_with_detection(
        token_account,
        user_id="user_alice",
        external_id="vf-alice",
        tokens=500,
        transaction_id=42,
        reason="plan downgrade refund",
    )

    rows = _rows("auto_deduction")
    assert len(rows) == 1
    assert Decimal(rows[0].amount) == Decimal("-2.50")
    assert rows[0].status == "completed"
    assert "#42" in rows[0].description
    assert outcome.auto_deducted is True
    assert outcome.auto_deduction_transaction_id == rows[0].id

    # What the user can see plus what was swallowed equals what was credited
    received = Decimal(outcome.updated_balance) / 100
    assert received + abs(Decimal(rows[0].amount)) == Decimal("5.00")


def test_non_negative_balance_produces_no_row(make_user, token_account):
    make_user()
    token_account.balances["vf-alice"] = 0

    outcome = credit_with_detection(
        token_account,
        user_id="user_alice",
        external_id="vf-alice",
        tokens=500,
        transaction_id=7,
        reason="refund",
    )

    assert _rows("auto_deduction") == []
    assert outcome.auto_deducted is False
    assert outcome.updated_balance == 500


def test_unreadable_balance_skips_detection_but_still_credits(make_user, token_account):
    make_user()
    token_account.balances["vf-alice"] = -250
    token_account.fail_balance = True

    outcome = credit_with_detection(
        token_account,
        user_id="user_alice",
        external_id="vf-alice",
        tokens=500,
        transaction_id=7,
        reason="refund",
    )

    assert outcome.initial_balance is None
    assert token_account.credits == [("vf-alice", 500, "7")]
    assert _rows("auto_deduction") == []


def test_credit_failure_raises_with_transaction_id(make_user, token_account):
    make_user()
    token_account.fail_credit = True

    with pytest.raises(ExternalCreditFailedError) as exc:
        credit_with_detection(
            token_account,
            user_id="user_alice",
            external_id="vf-alice",
            tokens=500,
            transaction_id=99,
            reason="refund",
        )

    assert exc.value.transaction_id == 99
    assert exc.value.details["transaction_id"] == 99
    assert _rows() == []


def test_grant_tokens_into_negative_account(make_user, token_account):
    make_user()
    token_account.balances["vf-alice"] = -250

    result = grant_tokens("user_alice", 500, "goodwill", token_client=token_account)

    credit = _rows("token_credit")
    assert len(credit) == 1
    assert credit[0].status == "completed"
    assert Decimal(credit[0].amount) == Decimal("5.00")
    assert credit[0].id == result["transaction_id"]
    assert result["auto_deduction_transaction_id"] == _rows("auto_deduction")[0].id


def test_grant_tokens_failure_marks_row_failed(make_user, token_account):
    make_user()
    token_account.fail_credit = True

    with pytest.raises(ExternalCreditFailedError):
        grant_tokens("user_alice", 500, "goodwill", token_client=token_account)

    assert [r.status for r in _rows("token_credit")] == ["failed"]


def test_grant_tokens_validates_input(make_user, token_account):
    make_user("user_bob", None)
    with pytest.raises(ValidationError):
        grant_tokens("user_bob", 0, "nothing", token_client=token_account)
    with pytest.raises(AccountNotLinkedError):
        grant_tokens("user_bob", 100, "unlinked", token_client=token_account)


def test_failed_post_credit_read_skips_detection(make_user, token_account, monkeypatch):
    """Initial -250 but the second balance read fails: credit lands, no deduction row."""
    from hostportal.features.tokens.provider import TokenAccountError

    make_user()
    token_account.balances["vf-alice"] = -250
    real_get_balance = token_account.get_balance
    reads = []

    def flaky_get_balance(external_id):
        reads.append(external_id)
        if len(reads) > 1:
            raise TokenAccountError("balance endpoint timed out")
        return real_get_balance(external_id)

    monkeypatch.setattr(token_account, "get_balance", flaky_get_balance)

    outcome = credit_with_detection(
        token_account,
        user_id="user_alice",
        external_id="vf-alice",
        tokens=500,
        transaction_id=9,
        reason="plan downgrade refund",
    )

    assert outcome.initial_balance == -250
    assert outcome.updated_balance is None
    assert outcome.auto_deducted is False
    assert token_account.credits
    assert _rows("auto_deduction") == []
