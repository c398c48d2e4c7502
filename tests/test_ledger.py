import threading
from decimal import Decimal

import pytest

from settlement_api.domain.entities import (
    Bucket, EntryCategory, EntryType, PaymentStatus, ReleaseReason, SplitPolicy, WithdrawalStatus,
)
from settlement_api.domain.errors import (
    DuplicatePayment, HoldAlreadyReleased, HoldForfeited, HoldFrozen, InsufficientBalance,
    InvalidWithdrawalState, MissingBankDetails, NotFound, ValidationError, WithdrawalBelowMinimum,
)
from settlement_api.services.ledger import derive_balance, split_payout


def _wallet(ledger, owner="T1", bank=True):
    return ledger.open_wallet(owner, "TECHNICIAN", has_bank_details=bank)


def _credit(ledger, wallet_id, amount, hold=None, pct=None, days=30, job_id=None):
    policy = SplitPolicy(hold_amount=hold, hold_percentage=pct, warranty_days=days, job_id=job_id)
    return ledger.credit_job_payment(wallet_id, amount, None, policy)


def test_credit_then_release_scenario(ledger):
    w = _wallet(ledger)
    first = ledger.post_credit(w.id, Decimal("1000"), "JOB-1",
                               SplitPolicy(hold_amount=Decimal("300"), warranty_days=30, job_id="JOB-1"))
    assert first.bucket == Bucket.AVAILABLE
    assert first.amount == Decimal("700.00")

    bal = ledger.balance(w.id)
    assert (bal.available, bal.locked) == (Decimal("700.00"), Decimal("300.00"))

    payment = ledger.repo.find_job_payment("JOB-1")
    assert payment.status == PaymentStatus.LOCKED
    entry = ledger.release_hold(payment.id, ReleaseReason.WARRANTY_EXPIRED)
    assert entry.type == EntryType.CREDIT and entry.bucket == Bucket.AVAILABLE

    bal = ledger.balance(w.id)
    assert (bal.available, bal.locked, bal.total) == (Decimal("1000.00"), Decimal("0.00"), Decimal("1000.00"))
    assert ledger.get_job_payment(payment.id).status == PaymentStatus.PAID


def test_second_release_is_rejected_without_side_effects(ledger):
    w = _wallet(ledger)
    payment, _ = _credit(ledger, w.id, 1000, hold=300)
    ledger.release_hold(payment.id)
    n_entries = len(ledger.entries(w.id))

    with pytest.raises(HoldAlreadyReleased):
        ledger.release_hold(payment.id)
    assert len(ledger.entries(w.id)) == n_entries
    assert ledger.balance(w.id).available == Decimal("1000.00")


def test_split_parts_sum_to_net(ledger):
    w = _wallet(ledger)
    payment, entries = ledger.credit_job_payment(
        w.id, Decimal("1000"), "JOB-9",
        SplitPolicy(hold_percentage=Decimal("25"), warranty_days=30, job_id="JOB-9",
                    gross_amount=Decimal("1200"), commission_amount=Decimal("200")),
    )
    assert payment.immediate_payment == Decimal("750.00")
    assert payment.hold_amount == Decimal("250.00")
    assert payment.immediate_payment + payment.hold_amount == payment.gross_amount - payment.commission_amount
    assert [e.category for e in entries] == [EntryCategory.JOB_PAYMENT, EntryCategory.WARRANTY_HOLD]


def test_mismatched_gross_and_commission_rejected(ledger):
    w = _wallet(ledger)
    with pytest.raises(ValidationError):
        ledger.credit_job_payment(w.id, 1000, None, SplitPolicy(
            gross_amount=Decimal("1200"), commission_amount=Decimal("100")))
    assert ledger.entries(w.id) == []


def test_zero_hold_is_paid_immediately(ledger):
    w = _wallet(ledger)
    payment, entries = _credit(ledger, w.id, 500, pct=0, days=None)
    assert payment.status == PaymentStatus.PAID
    assert len(entries) == 1
    with pytest.raises(HoldAlreadyReleased):
        ledger.release_hold(payment.id)


def test_hold_without_warranty_is_rejected(ledger):
    w = _wallet(ledger)
    with pytest.raises(ValidationError):
        _credit(ledger, w.id, 1000, hold=300, days=None)
    assert ledger.balance(w.id).total == Decimal("0.00")


def test_duplicate_job_payment(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, pct=20, job_id="JOB-1")
    with pytest.raises(DuplicatePayment):
        _credit(ledger, w.id, 1000, pct=20, job_id="JOB-1")
    assert ledger.balance(w.id).total == Decimal("1000.00")


def test_debit_cannot_touch_locked_funds(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, hold=300)
    with pytest.raises(InsufficientBalance):
        ledger.debit(w.id, Decimal("800"))
    entry = ledger.debit(w.id, Decimal("700"), "CB-1")
    assert entry.category == EntryCategory.COMMISSION_CHARGEBACK
    bal = ledger.balance(w.id)
    assert (bal.available, bal.locked) == (Decimal("0.00"), Decimal("300.00"))


@pytest.mark.parametrize("amount", [0, -5, "abc", "NaN"])
def test_debit_amount_must_be_positive(ledger, amount):
    w = _wallet(ledger)
    with pytest.raises(ValidationError):
        ledger.debit(w.id, amount)


def test_debit_unknown_category(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 100, pct=0)
    with pytest.raises(ValidationError):
        ledger.debit(w.id, 10, category="GIFT")


def test_unknown_wallet(ledger):
    with pytest.raises(NotFound):
        ledger.balance(404)
    with pytest.raises(NotFound):
        _credit(ledger, 404, 100, pct=0)


def test_open_wallet_is_idempotent(ledger):
    a = ledger.open_wallet("T1", "technician")
    b = ledger.open_wallet("T1", "TECHNICIAN", has_bank_details=True)
    assert a.id == b.id
    assert ledger.get_wallet(a.id).has_bank_details is True
    with pytest.raises(ValidationError):
        ledger.open_wallet("T1", "ADMIN")


def test_balance_equals_entry_history(ledger):
    w = _wallet(ledger)
    p1, _ = _credit(ledger, w.id, 1000, hold=300)
    _credit(ledger, w.id, 400, pct=50)
    ledger.release_hold(p1.id)
    ledger.debit(w.id, 250)

    entries = ledger.entries(w.id)
    credits = sum(e.amount for e in entries if e.type == EntryType.CREDIT)
    debits = sum(e.amount for e in entries if e.type == EntryType.DEBIT)
    bal = ledger.balance(w.id)
    assert bal.total == credits - debits
    assert bal == derive_balance(entries)

    audit = ledger.audit(w.id)
    assert audit[-1]["total"] == bal.total
    assert all(row["available"] >= 0 and row["locked"] >= 0 for row in audit)


def test_cache_divergence_is_repaired(ledger, caplog):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, hold=300)
    tampered = ledger.repo.get_wallet(w.id)
    tampered.available_balance = Decimal("9999.00")
    ledger.repo.save_wallet(tampered)

    bal = ledger.balance(w.id)
    assert bal.available == Decimal("700.00")
    assert ledger.repo.get_wallet(w.id).available_balance == Decimal("700.00")
    assert "cache diverged" in caplog.text


def test_failed_write_leaves_no_partial_effect(ledger, monkeypatch):
    w = _wallet(ledger)
    real_add_entry = ledger.repo.add_entry
    calls = []

    def flaky(entry):
        calls.append(entry)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        return real_add_entry(entry)

    monkeypatch.setattr(ledger.repo, "add_entry", flaky)
    with pytest.raises(RuntimeError):
        _credit(ledger, w.id, 1000, hold=300, job_id="JOB-1")
    monkeypatch.undo()

    assert ledger.entries(w.id) == []
    assert ledger.repo.find_job_payment("JOB-1") is None
    assert ledger.balance(w.id).total == Decimal("0.00")


# ---------- freeze / forfeit / sweep ----------

def test_frozen_hold_only_releases_on_dispute_resolution(ledger):
    w = _wallet(ledger)
    payment, _ = _credit(ledger, w.id, 1000, hold=300)
    ledger.freeze_hold(payment.id, "customer complaint #12")

    with pytest.raises(HoldFrozen):
        ledger.release_hold(payment.id, ReleaseReason.WARRANTY_EXPIRED)
    assert ledger.balance(w.id).locked == Decimal("300.00")

    ledger.release_hold(payment.id, "DISPUTE_RESOLVED")
    released = ledger.get_job_payment(payment.id)
    assert released.status == PaymentStatus.PAID
    assert released.release_reason == "DISPUTE_RESOLVED"
    assert released.is_frozen is False


def test_unfreeze(ledger):
    w = _wallet(ledger)
    payment, _ = _credit(ledger, w.id, 1000, hold=300)
    with pytest.raises(ValidationError):
        ledger.unfreeze_hold(payment.id)
    ledger.freeze_hold(payment.id, "complaint")
    assert ledger.unfreeze_hold(payment.id).is_frozen is False
    ledger.release_hold(payment.id)


def test_forfeit_removes_held_amount(ledger):
    w = _wallet(ledger)
    payment, _ = _credit(ledger, w.id, 1000, hold=300)
    entry = ledger.forfeit_hold(payment.id, "dispute lost")
    assert entry.category == EntryCategory.HOLD_FORFEIT

    bal = ledger.balance(w.id)
    assert (bal.available, bal.locked) == (Decimal("700.00"), Decimal("0.00"))
    with pytest.raises(HoldForfeited):
        ledger.release_hold(payment.id, "DISPUTE_RESOLVED")


def test_release_reason_must_be_known(ledger):
    w = _wallet(ledger)
    payment, _ = _credit(ledger, w.id, 1000, hold=300)
    with pytest.raises(ValidationError):
        ledger.release_hold(payment.id, "BECAUSE")


def test_sweep_releases_only_expired_unfrozen_holds(ledger, clock):
    w = _wallet(ledger)
    expired, _ = _credit(ledger, w.id, 100, hold=50, days=10, job_id="A")
    frozen, _ = _credit(ledger, w.id, 100, hold=50, days=10, job_id="B")
    disputed, _ = _credit(ledger, w.id, 100, hold=50, days=10, job_id="C")
    later, _ = _credit(ledger, w.id, 100, hold=50, days=60, job_id="D")
    ledger.freeze_hold(frozen.id, "complaint")

    clock.advance(days=11)
    result = ledger.release_expired_holds(has_open_dispute=lambda p: p.job_id == "C")

    assert result.released == [expired.id]
    assert sorted(result.skipped) == sorted([frozen.id, disputed.id])
    assert result.errors == {}
    assert ledger.get_job_payment(later.id).status == PaymentStatus.LOCKED
    assert ledger.balance(w.id).locked == Decimal("150.00")

    # a second run has nothing new to release
    assert ledger.release_expired_holds(has_open_dispute=lambda p: p.job_id == "C").released == []


# ---------- withdrawals ----------

def test_withdrawal_requires_bank_details(ledger):
    w = _wallet(ledger, bank=False)
    _credit(ledger, w.id, 1000, pct=0)
    with pytest.raises(MissingBankDetails) as exc:
        ledger.request_withdrawal(w.id, 600)
    assert exc.value.message == "Bank details not completed. Please add bank details first."

    ledger.set_bank_details(w.id)
    assert ledger.request_withdrawal(w.id, 600).status == WithdrawalStatus.PENDING


def test_withdrawal_minimum_and_balance(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 800, pct=0)
    with pytest.raises(WithdrawalBelowMinimum):
        ledger.request_withdrawal(w.id, 499)
    with pytest.raises(InsufficientBalance):
        ledger.request_withdrawal(w.id, 900)
    assert ledger.balance(w.id).available == Decimal("800.00")


def test_withdrawal_paid(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, pct=0)
    wd = ledger.request_withdrawal(w.id, 600)
    assert ledger.balance(w.id).available == Decimal("400.00")

    done = ledger.complete_withdrawal(wd.id, "PAID", bank_reference="UTR123")
    assert done.status == WithdrawalStatus.PAID
    assert done.bank_reference == "UTR123"
    assert ledger.balance(w.id).available == Decimal("400.00")
    with pytest.raises(InvalidWithdrawalState):
        ledger.complete_withdrawal(wd.id, "FAILED")


def test_failed_withdrawal_is_reversed(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, pct=0)
    wd = ledger.request_withdrawal(w.id, 600)
    done = ledger.complete_withdrawal(wd.id, "failed")

    assert done.status == WithdrawalStatus.FAILED
    assert done.failure_reason == "Bank transfer failed"
    assert ledger.balance(w.id).available == Decimal("1000.00")
    assert ledger.entries(w.id)[-1].category == EntryCategory.WITHDRAWAL_REVERSAL


def test_complete_withdrawal_validation(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, pct=0)
    wd = ledger.request_withdrawal(w.id, 600)
    with pytest.raises(ValidationError):
        ledger.complete_withdrawal(wd.id, "PENDING")
    with pytest.raises(NotFound):
        ledger.complete_withdrawal(999, "PAID")


def test_custom_minimum_withdraw_limit(ledger_repo, clock):
    from settlement_api.services.ledger import LedgerService

    ledger = LedgerService(ledger_repo, min_withdraw_limit=Decimal("100"), clock=clock)
    w = _wallet(ledger)
    _credit(ledger, w.id, 300, pct=0)
    assert ledger.request_withdrawal(w.id, 150).amount == Decimal("150.00")


# ---------- helpers ----------

def test_split_payout_bounds():
    assert split_payout(Decimal("100.00"), SplitPolicy(hold_percentage=Decimal("33"))) == \
        (Decimal("67.00"), Decimal("33.00"))
    with pytest.raises(ValidationError):
        split_payout(Decimal("100.00"), SplitPolicy(hold_amount=Decimal("101")))
    with pytest.raises(ValidationError):
        split_payout(Decimal("100.00"), SplitPolicy(hold_percentage=Decimal("120")))


# ---------- concurrency ----------

def test_concurrent_debits_never_overdraw(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 1000, pct=0)
    outcomes = []
    start = threading.Barrier(50)

    def worker():
        start.wait()
        try:
            ledger.debit(w.id, 30)
            outcomes.append("ok")
        except InsufficientBalance:
            outcomes.append("insufficient")

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 33
    assert outcomes.count("insufficient") == 17
    assert ledger.balance(w.id).available == Decimal("10.00")


def test_concurrent_releases_pay_out_once(ledger):
    w = _wallet(ledger)
    payment, _ = _credit(ledger, w.id, 1000, hold=300)
    outcomes = []
    start = threading.Barrier(10)

    def worker():
        start.wait()
        try:
            ledger.release_hold(payment.id)
            outcomes.append("ok")
        except HoldAlreadyReleased:
            outcomes.append("dup")

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert ledger.balance(w.id).available == Decimal("1000.00")


def test_other_wallets_are_not_blocked(ledger):
    a = _wallet(ledger, owner="A")
    b = _wallet(ledger, owner="B")
    done = threading.Event()

    def credit_b():
        _credit(ledger, b.id, 100, pct=0)
        done.set()

    with ledger._lock_for(a.id):
        t = threading.Thread(target=credit_b)
        t.start()
        assert done.wait(timeout=5)
        t.join()
    assert ledger.balance(b.id).available == Decimal("100.00")


@pytest.mark.parametrize("category", ["WITHDRAWAL", "WARRANTY_HOLD", "HOLD_RELEASE", "JOB_PAYMENT"])
def test_debit_rejects_categories_with_their_own_flow(ledger, category):
    w = _wallet(ledger, bank=False)
    _credit(ledger, w.id, 1000, pct=0)
    with pytest.raises(ValidationError):
        ledger.debit(w.id, 1, "cash-out", category=category)
    assert ledger.balance(w.id).available == Decimal("1000.00")
    assert len(ledger.entries(w.id)) == 1


def test_adjustment_debit_is_allowed(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 100, pct=0)
    entry = ledger.debit(w.id, 40, "ADJ-1", category="ADJUSTMENT")
    assert entry.category == EntryCategory.ADJUSTMENT
    assert ledger.balance(w.id).available == Decimal("60.00")


@pytest.mark.parametrize("policy", [
    SplitPolicy(hold_percentage=Decimal("NaN"), warranty_days=30),
    SplitPolicy(hold_amount=Decimal("Infinity"), warranty_days=30),
])
def test_non_finite_split_inputs_are_rejected(ledger, policy):
    w = _wallet(ledger)
    with pytest.raises(ValidationError):
        ledger.post_credit(w.id, Decimal("100"), "JOB-1", policy)
    assert ledger.entries(w.id) == []


def test_wallet_locks_are_not_retained(ledger):
    w = _wallet(ledger)
    _credit(ledger, w.id, 100, pct=0)
    ledger.debit(w.id, 10)
    assert w.id not in ledger._locks
