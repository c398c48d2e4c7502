from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from settlement_api.domain.entities import (
    DealerScoped, PaymentStatus, SettlementStatus, SplitPolicy, TransactionContext, utcnow,
)
from settlement_api.domain.errors import (
    HoldAlreadyReleased, InsufficientBalance, SettlementClosed,
)
from settlement_api.extensions import db
from settlement_api.models.commission import CommissionRuleRow
from settlement_api.models.party import DealerRow, JobReviewRow, JobRow, TechnicianRow
from settlement_api.models.settlement import SellerSaleRow
from settlement_api.models.wallet import LedgerEntryRow, WalletRow, WithdrawalRow
from settlement_api.services import core


# ---------- ledger ----------

def test_ledger_flow_is_persisted(app):
    ledger = core().ledger
    w = ledger.open_wallet("T1", "TECHNICIAN", has_bank_details=True)
    ledger.post_credit(w.id, Decimal("1000"), "JOB-1",
                       SplitPolicy(hold_amount=Decimal("300"), warranty_days=30, job_id="JOB-1"))

    row = db.session.get(WalletRow, w.id)
    assert Decimal(row.available_balance) == Decimal("700.00")
    assert Decimal(row.locked_balance) == Decimal("300.00")

    payment = ledger.repo.find_job_payment("JOB-1")
    ledger.release_hold(payment.id)
    with pytest.raises(HoldAlreadyReleased):
        ledger.release_hold(payment.id)

    bal = ledger.balance(w.id)
    assert (bal.available, bal.locked) == (Decimal("1000.00"), Decimal("0.00"))
    assert LedgerEntryRow.query.filter_by(wallet_id=w.id).count() == 4
    assert ledger.get_job_payment(payment.id).status == PaymentStatus.PAID


def test_failed_operation_rolls_back(app):
    ledger = core().ledger
    w = ledger.open_wallet("T1", "TECHNICIAN", has_bank_details=True)
    ledger.post_credit(w.id, Decimal("600"), "JOB-1")

    with pytest.raises(InsufficientBalance):
        ledger.request_withdrawal(w.id, Decimal("700"))

    assert WithdrawalRow.query.count() == 0
    assert LedgerEntryRow.query.filter_by(wallet_id=w.id).count() == 1
    assert ledger.balance(w.id).available == Decimal("600.00")


def test_sweep_over_sql(app):
    ledger = core().ledger
    w = ledger.open_wallet("T1", "TECHNICIAN")
    payment, _ = ledger.credit_job_payment(w.id, Decimal("100"), None, SplitPolicy(
        hold_percentage=Decimal("50"), warranty_end_date=utcnow() - timedelta(days=1), job_id="JOB-1",
    ))

    result = ledger.release_expired_holds()
    assert result.released == [payment.id]
    assert ledger.balance(w.id).available == Decimal("100.00")


# ---------- commission ----------

def test_rules_round_trip_and_supersede(app):
    resolver = core().resolver
    first = resolver.create_rule("PERCENTAGE", "10")
    resolver.create_rule("PERCENTAGE", "12")
    resolver.create_rule("FIXED", "250", dealer_id="D1", service_category_id="C1")

    assert db.session.get(CommissionRuleRow, first.id).is_active is False

    stored = [r for r in resolver.list_rules(active_only=True) if not r.is_default]
    assert stored[0].scope == DealerScoped("D1", "C1", None)

    hit = resolver.resolve(TransactionContext(dealer_id="D1", service_category_id="C1",
                                              gross_amount=Decimal("1000")))
    assert hit.source == "dealer-serviceCategory"
    assert hit.commission_amount == Decimal("250.00")
    assert resolver.resolve(TransactionContext(dealer_id="D2")).commission_value == Decimal("12")


# ---------- trust profiles ----------

def test_trust_score_from_tables(app):
    db.session.add(TechnicianRow(id="T1", total_jobs=10, completed_jobs=8, is_kyc_completed=True))
    db.session.add(JobReviewRow(reviewee_id="T1", reviewee_type="TECHNICIAN", rating=5, is_locked=True))
    db.session.add(JobReviewRow(reviewee_id="T1", reviewee_type="TECHNICIAN", rating=1, is_locked=False))
    db.session.add(JobRow(id="J1", technician_id="T1", status="WARRANTY"))
    db.session.add(DealerRow(id="D1", rating=Decimal("4.0")))
    db.session.add(JobRow(id="J2", dealer_id="D1", status="COMPLETED"))
    db.session.add(JobRow(id="J3", dealer_id="D1", status="WARRANTY"))
    db.session.commit()

    trust = core().trust
    # 40 + 24 + 30 + 10 - 5
    assert trust.score_technician("T1") == 99
    # 32 + 15 + 30 - 5
    assert trust.score_dealer("D1") == 72
    assert trust.score_dealer("missing") == 30


# ---------- settlements ----------

def test_settlement_lifecycle_over_sql(app):
    settlements = core().settlements
    settlements.record_sale("S1", "O-1", 1000, sold_at=datetime(2026, 3, 3), commission=100)
    settlements.record_sale("S1", "O-2", 500, sold_at=datetime(2026, 3, 7, 18), commission=50)

    s = settlements.create_batch("S1", date(2026, 3, 1), date(2026, 3, 7))
    assert s.settlement_amount == Decimal("1350.00")
    assert SellerSaleRow.query.filter_by(settlement_id=s.id).count() == 2
    assert settlements.create_batch("S1", date(2026, 3, 1), date(2026, 3, 7)).id == s.id

    stale = settlements.get(s.id)
    settlements.approve(s.id)
    stale.status = SettlementStatus.ON_HOLD
    assert settlements.repo.compare_and_set(stale, stale.version) is False

    paid = settlements.mark_paid(s.id, "NEFT-9")
    assert paid.version == 3
    assert [x.id for x in settlements.list_batches(status="PAID")] == [s.id]
    with pytest.raises(SettlementClosed):
        settlements.approve(s.id)
