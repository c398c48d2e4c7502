import logging
from decimal import Decimal

import pytest

from settlement_api.domain.entities import PaymentStatus, TransactionContext
from settlement_api.domain.errors import (
    DuplicatePayment, MarginBelowMinimum, NoApplicableRule, ValidationError,
)


@pytest.fixture
def wallet(ledger):
    return ledger.open_wallet("T1", "TECHNICIAN", has_bank_details=True)


def test_job_payout_splits_net_after_commission(resolver, payouts, ledger, wallet):
    resolver.create_rule("PERCENTAGE", 10)
    payout = payouts.credit_job(wallet.id, "JOB-1", 1000, hold_percentage=20, warranty_days=30)

    assert payout.commission.commission_amount == Decimal("100.00")
    assert payout.payment.gross_amount == Decimal("1000.00")
    assert payout.payment.commission_amount == Decimal("100.00")
    assert payout.payment.immediate_payment == Decimal("720.00")
    assert payout.payment.hold_amount == Decimal("180.00")
    assert payout.payment.status == PaymentStatus.LOCKED

    bal = ledger.balance(wallet.id)
    assert (bal.available, bal.locked) == (Decimal("720.00"), Decimal("180.00"))


def test_defaults_come_from_service_config(resolver, payouts, ledger, wallet, clock):
    resolver.create_rule("FIXED", 50)
    payout = payouts.credit_job(wallet.id, "JOB-2", 550)
    # 20% of 500 held for 30 days
    assert payout.payment.hold_amount == Decimal("100.00")
    assert (payout.payment.warranty_end_date - clock.now).days == 30


def test_dealer_context_selects_dealer_rule(resolver, payouts, wallet):
    resolver.create_rule("PERCENTAGE", 10)
    resolver.create_rule("FIXED", 25, dealer_id="D1")
    payout = payouts.credit_job(wallet.id, "JOB-3", 1000, context=TransactionContext(dealer_id="D1"),
                                hold_percentage=0)
    assert payout.commission.source == "dealer"
    assert payout.payment.immediate_payment == Decimal("975.00")


def test_no_rule_means_no_credit(payouts, ledger, wallet):
    with pytest.raises(NoApplicableRule):
        payouts.credit_job(wallet.id, "JOB-1", 1000)
    assert ledger.entries(wallet.id) == []


def test_margin_auto_reject_blocks_credit(resolver, payouts, ledger, wallet):
    resolver.create_rule("PERCENTAGE", 10)
    resolver.create_margin_rule(minimum_margin_percent=15, auto_reject=True)
    with pytest.raises(MarginBelowMinimum):
        payouts.credit_job(wallet.id, "JOB-1", 1000)
    assert ledger.repo.find_job_payment("JOB-1") is None


def test_margin_shortfall_flagged_for_approval(resolver, payouts, wallet, caplog):
    resolver.create_rule("PERCENTAGE", 10)
    resolver.create_margin_rule(minimum_margin_percent=15, requires_approval=True)
    with caplog.at_level(logging.WARNING):
        payout = payouts.credit_job(wallet.id, "JOB-1", 1000)
    assert payout.payment.requires_approval is True
    assert payout.margin.requires_approval is True
    assert "flagged for approval" in caplog.text


def test_duplicate_job(resolver, payouts, wallet):
    resolver.create_rule("PERCENTAGE", 10)
    payouts.credit_job(wallet.id, "JOB-1", 1000)
    with pytest.raises(DuplicatePayment):
        payouts.credit_job(wallet.id, "JOB-1", 1000)


@pytest.mark.parametrize("kwargs", [
    dict(gross_amount=0),
    dict(gross_amount="abc"),
    dict(gross_amount="NaN"),
    dict(gross_amount=1000, hold_percentage="Infinity"),
    dict(gross_amount=1000, hold_percentage=150),
    dict(gross_amount=1000, warranty_days=-1),
])
def test_invalid_inputs(resolver, payouts, wallet, kwargs):
    resolver.create_rule("PERCENTAGE", 10)
    with pytest.raises(ValidationError):
        payouts.credit_job(wallet.id, "JOB-1", **kwargs)


def test_commission_consuming_everything_is_rejected(resolver, payouts, wallet):
    resolver.create_rule("FIXED", 5000)
    with pytest.raises(ValidationError):
        payouts.credit_job(wallet.id, "JOB-1", 1000)


def test_numeric_dealer_id_selects_dealer_rule(resolver, payouts, wallet):
    resolver.create_rule("PERCENTAGE", 10)
    resolver.create_rule("FIXED", 500, dealer_id=7)
    payout = payouts.credit_job(wallet.id, "JOB-4", 5000, context=TransactionContext(dealer_id=7),
                                hold_percentage=0)
    assert payout.commission.source == "dealer"
    assert payout.payment.immediate_payment == Decimal("4500.00")
