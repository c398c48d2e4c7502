import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from settlement_api.domain.entities import SettlementStatus, TransactionContext
from settlement_api.domain.errors import (
    InvalidCycle, InvalidTransition, NotFound, SettlementClosed, ValidationError,
)
from settlement_api.repositories.memory import MemorySettlementRepository
from settlement_api.services.settlement import SettlementService, cycle_days

START, END = date(2026, 3, 1), date(2026, 3, 7)


def _sale(settlements, seller="S1", ref="O-1", amount=1000, commission=100, deductions=0,
          when=datetime(2026, 3, 3, 12, 0)):
    return settlements.record_sale(seller, ref, amount, sold_at=when, deductions=deductions,
                                   commission=commission)


@pytest.fixture
def batch(settlements):
    _sale(settlements, ref="O-1", amount=1000, commission=100)
    _sale(settlements, ref="O-2", amount=500, commission=50, deductions=20)
    return settlements.create_batch("S1", START, END)


def test_batch_aggregates_unsettled_sales(batch):
    assert batch.status == SettlementStatus.PENDING
    assert batch.total_sales == Decimal("1500.00")
    assert batch.commission == Decimal("150.00")
    assert batch.deductions == Decimal("20.00")
    assert batch.settlement_amount == Decimal("1330.00")
    assert batch.sale_count == 2
    assert batch.due_date == date(2026, 3, 14)
    assert batch.version == 1


def test_sales_outside_period_or_seller_are_excluded(settlements):
    _sale(settlements, ref="in")
    _sale(settlements, ref="before", when=datetime(2026, 2, 28, 23, 59))
    _sale(settlements, ref="after", when=datetime(2026, 3, 8, 0, 0))
    _sale(settlements, seller="S2", ref="other")
    _sale(settlements, ref="last-day", when=datetime(2026, 3, 7, 23, 59, 59))

    s = settlements.create_batch("S1", START, END)
    assert s.sale_count == 2
    assert s.total_sales == Decimal("2000.00")


def test_create_batch_is_idempotent(settlements, batch):
    _sale(settlements, ref="late", when=datetime(2026, 3, 6))
    again = settlements.create_batch("S1", START, END)
    assert again.id == batch.id
    assert again.total_sales == batch.total_sales
    assert len(settlements.list_batches(seller_id="S1")) == 1


def test_sales_are_settled_once(settlements, batch):
    overlapping = settlements.create_batch("S1", START, date(2026, 3, 10))
    assert overlapping.id != batch.id
    assert overlapping.sale_count == 0
    assert overlapping.settlement_amount == Decimal("0.00")


def test_cycle_sets_due_date(settlements):
    s = settlements.create_batch("S1", START, END, cycle="t+3")
    assert s.cycle == "T+3"
    assert s.due_date == date(2026, 3, 10)


@pytest.mark.parametrize("cycle", ["T7", "weekly", "T+", "T-7"])
def test_invalid_cycle(settlements, cycle):
    with pytest.raises(InvalidCycle):
        settlements.create_batch("S1", START, END, cycle=cycle)


def test_cycle_days():
    assert cycle_days("T+7") == 7
    assert cycle_days("T+0") == 0


def test_invalid_default_cycle_fails_fast():
    with pytest.raises(InvalidCycle):
        SettlementService(MemorySettlementRepository(), default_cycle="monthly")


def test_period_validation(settlements):
    with pytest.raises(ValidationError):
        settlements.create_batch("S1", END, START)
    with pytest.raises(ValidationError):
        settlements.create_batch("", START, END)


def test_generate_for_period(settlements):
    _sale(settlements, seller="S1", ref="a")
    _sale(settlements, seller="S2", ref="b")
    batches = settlements.generate_for_period(START, END)
    assert sorted(b.seller_id for b in batches) == ["S1", "S2"]
    assert settlements.generate_for_period(START, END) == []


# ---------- transitions ----------

def test_approve_then_pay(settlements, batch):
    approved = settlements.approve(batch.id)
    assert approved.status == SettlementStatus.APPROVED
    assert approved.version == 2

    # approving twice is a no-op
    again = settlements.approve(batch.id)
    assert again.version == 2

    paid = settlements.mark_paid(batch.id, "NEFT-001")
    assert paid.status == SettlementStatus.PAID
    assert paid.payment_reference == "NEFT-001"
    assert settlements.get(batch.id).version == 3


@pytest.mark.parametrize("action", ["approve", "hold", "release", "mark_paid"])
def test_paid_is_terminal(settlements, batch, action):
    settlements.approve(batch.id)
    settlements.mark_paid(batch.id, "NEFT-001")

    call = getattr(settlements, action)
    args = {"hold": ("",), "mark_paid": ("",)}.get(action, ())
    with pytest.raises(SettlementClosed):
        call(batch.id, *args)
    assert settlements.get(batch.id).status == SettlementStatus.PAID


def test_hold_and_release(settlements, batch):
    with pytest.raises(ValidationError):
        settlements.hold(batch.id, "  ")

    held = settlements.hold(batch.id, "KYC mismatch")
    assert held.status == SettlementStatus.ON_HOLD
    assert held.hold_reason == "KYC mismatch"

    with pytest.raises(InvalidTransition):
        settlements.approve(batch.id)

    released = settlements.release(batch.id)
    assert released.status == SettlementStatus.PENDING
    assert released.hold_reason is None
    assert settlements.approve(batch.id).status == SettlementStatus.APPROVED


def test_disallowed_transitions(settlements, batch):
    with pytest.raises(InvalidTransition):
        settlements.release(batch.id)
    with pytest.raises(InvalidTransition):
        settlements.mark_paid(batch.id, "NEFT-1")
    settlements.approve(batch.id)
    with pytest.raises(InvalidTransition):
        settlements.hold(batch.id, "late")


def test_mark_paid_needs_reference(settlements, batch):
    settlements.approve(batch.id)
    with pytest.raises(ValidationError):
        settlements.mark_paid(batch.id, "")
    assert settlements.get(batch.id).status == SettlementStatus.APPROVED


def test_unknown_settlement(settlements):
    with pytest.raises(NotFound):
        settlements.approve(42)


def test_list_batches_filters(settlements, batch):
    settlements.create_batch("S2", START, END)
    settlements.approve(batch.id)
    assert [s.id for s in settlements.list_batches(status="approved")] == [batch.id]
    assert len(settlements.list_batches()) == 2
    with pytest.raises(ValidationError):
        settlements.list_batches(status="DONE")


# ---------- optimistic concurrency ----------

class RacingRepository(MemorySettlementRepository):
    """Lets a competing writer win right before our first compare-and-set."""

    def __init__(self):
        super().__init__()
        self.competitor = None

    def compare_and_set(self, settlement, expected_version):
        if self.competitor is not None:
            competitor, self.competitor = self.competitor, None
            competitor()
        return super().compare_and_set(settlement, expected_version)


def test_stale_version_is_rejected(settlements, batch):
    stale = settlements.get(batch.id)
    settlements.approve(batch.id)

    stale.status = SettlementStatus.ON_HOLD
    assert settlements.repo.compare_and_set(stale, stale.version) is False
    assert settlements.get(batch.id).status == SettlementStatus.APPROVED


def test_losing_writer_rereads_and_decides_again(clock):
    repo = RacingRepository()
    service = SettlementService(repo, clock=clock)
    service.record_sale("S1", "O-1", 100, sold_at=datetime(2026, 3, 3), commission=0)
    s = service.create_batch("S1", START, END)

    repo.competitor = lambda: service.approve(s.id)
    with pytest.raises(InvalidTransition):
        service.hold(s.id, "fraud check")
    assert service.get(s.id).status == SettlementStatus.APPROVED


def test_approve_racing_approve_is_a_noop(clock):
    repo = RacingRepository()
    service = SettlementService(repo, clock=clock)
    s = service.create_batch("S1", START, END)

    repo.competitor = lambda: service.approve(s.id)
    assert service.approve(s.id).version == 2


def test_concurrent_approvals_converge(settlements, batch):
    results, errors = [], []
    start = threading.Barrier(10)

    def worker():
        start.wait()
        try:
            results.append(settlements.approve(batch.id))
        except InvalidTransition as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert all(r.status == SettlementStatus.APPROVED for r in results)
    assert settlements.get(batch.id).version == 2


# ---------- sales ----------

def test_sale_commission_resolved_from_rules(resolver, settlements):
    resolver.create_rule("PERCENTAGE", 10)
    resolver.create_rule("PERCENTAGE", 5, dealer_id="S1")
    sale = settlements.record_sale("S1", "O-9", 1000)
    assert sale.commission == Decimal("50.00")

    other = settlements.record_sale("S2", "O-10", 1000, context=TransactionContext(dealer_id="S2"))
    assert other.commission == Decimal("100.00")


@pytest.mark.parametrize("kwargs", [
    dict(amount=0, commission=0),
    dict(amount=100, commission=150),
    dict(amount=100, commission=0, deductions=-1),
    dict(amount="x", commission=0),
])
def test_sale_validation(settlements, kwargs):
    with pytest.raises(ValidationError):
        settlements.record_sale("S1", "O-1", **kwargs)


def test_sale_without_resolver_needs_commission(clock):
    service = SettlementService(MemorySettlementRepository(), clock=clock)
    with pytest.raises(ValidationError):
        service.record_sale("S1", "O-1", 100)
