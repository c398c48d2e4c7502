# settlement_api/services/settlement.py
"""
Seller settlement batches.

    PENDING ──approve──▶ APPROVED ──mark_paid──▶ PAID (terminal)
       │  ▲
     hold release
       ▼  │
     ON_HOLD

Transitions are compare-and-set on `version`: read, check, write only if the
version is unchanged, otherwise re-read and decide again.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, List, Optional

from settlement_api.domain.entities import (
    SellerSale, Settlement, SettlementStatus, TransactionContext, q2, utcnow, ZERO,
)
from settlement_api.domain.errors import (
    InvalidCycle, InvalidTransition, NotFound, SettlementClosed, ValidationError,
)
from settlement_api.repositories.base import SettlementRepository
from settlement_api.services.commission_resolver import CommissionResolver

log = logging.getLogger(__name__)

_CYCLE_RE = re.compile(r"^T\+(\d{1,3})$")
MAX_CAS_ATTEMPTS = 5


def cycle_days(cycle: str) -> int:
    """'T+7' → 7."""
    m = _CYCLE_RE.match((cycle or "").strip().upper())
    if not m:
        raise InvalidCycle(f"Invalid settlement cycle {cycle!r}; expected a label like 'T+7'")
    return int(m.group(1))


class SettlementService:
    def __init__(self, repo: SettlementRepository, resolver: Optional[CommissionResolver] = None,
                 default_cycle: str = "T+7", clock: Callable[[], datetime] = utcnow):
        cycle_days(default_cycle)
        self.repo = repo
        self.resolver = resolver
        self.default_cycle = default_cycle
        self.clock = clock

    # ---------- sales ----------

    def record_sale(self, seller_id: str, order_ref: str, amount, sold_at: Optional[datetime] = None,
                    deductions=0, commission=None, context: Optional[TransactionContext] = None) -> SellerSale:
        """
        Store a completed sale. Commission is resolved from the rule set unless
        given explicitly.
        """
        if not seller_id or not order_ref:
            raise ValidationError("sellerId and orderRef are required")
        gross = _money(amount, "amount")
        if gross <= 0:
            raise ValidationError("amount must be greater than 0")
        ded = _money(deductions, "deductions")
        if ded < 0:
            raise ValidationError("deductions must be >= 0")

        if commission is None:
            if self.resolver is None:
                raise ValidationError("commission is required when no resolver is configured")
            ctx = context or TransactionContext(dealer_id=seller_id)
            ctx.gross_amount = gross
            comm = self.resolver.resolve(ctx).commission_amount
        else:
            comm = _money(commission, "commission")
            if comm < 0 or comm > gross:
                raise ValidationError("commission must be between 0 and the sale amount")

        sale = SellerSale(
            seller_id=seller_id,
            order_ref=order_ref,
            amount=gross,
            commission=comm,
            deductions=ded,
            sold_at=sold_at or self.clock(),
        )
        with self.repo.transaction():
            self.repo.add_sale(sale)
        return sale

    # ---------- batches ----------

    def create_batch(self, seller_id: str, period_start: date, period_end: date,
                     cycle: Optional[str] = None) -> Settlement:
        """
        Aggregate the seller's unsettled sales for the period into one PENDING
        settlement. Keyed by (seller, period): an existing batch is returned as is.
        """
        if not seller_id:
            raise ValidationError("sellerId is required")
        if not period_start or not period_end:
            raise ValidationError("periodStart and periodEnd are required")
        if period_end < period_start:
            raise ValidationError("periodEnd must be >= periodStart")
        cycle = (cycle or self.default_cycle).strip().upper()
        days = cycle_days(cycle)

        existing = self.repo.find_settlement(seller_id, period_start, period_end)
        if existing:
            return existing

        with self.repo.transaction():
            sales = self.repo.unsettled_sales(seller_id, period_start, period_end)
            settlement = Settlement(
                seller_id=seller_id,
                period_start=period_start,
                period_end=period_end,
                total_sales=q2(sum((s.amount for s in sales), ZERO)),
                commission=q2(sum((s.commission for s in sales), ZERO)),
                deductions=q2(sum((s.deductions for s in sales), ZERO)),
                cycle=cycle,
                due_date=period_end + timedelta(days=days),
                sale_count=len(sales),
                created_at=self.clock(),
            )
            added = self.repo.add_settlement(settlement)
            if added is not None:
                self.repo.assign_sales([s.id for s in sales], added.id)

        if added is None:
            # lost a race with a concurrent creator for the same key
            return self.repo.find_settlement(seller_id, period_start, period_end)
        log.info("settlement %s created for seller %s %s..%s amount=%s (%d sales)",
                 added.id, seller_id, period_start, period_end, added.settlement_amount, len(sales))
        return added

    def generate_for_period(self, period_start: date, period_end: date,
                            cycle: Optional[str] = None) -> List[Settlement]:
        return [
            self.create_batch(seller_id, period_start, period_end, cycle)
            for seller_id in self.repo.sellers_with_unsettled_sales(period_start, period_end)
        ]

    def get(self, settlement_id: int) -> Settlement:
        s = self.repo.get_settlement(settlement_id)
        if s is None:
            raise NotFound("Settlement not found", {"id": settlement_id})
        return s

    def list_batches(self, seller_id: Optional[str] = None, status: Optional[str] = None) -> List[Settlement]:
        if status:
            try:
                status = SettlementStatus(status.upper())
            except ValueError:
                raise ValidationError(f"Unknown settlement status {status!r}")
        return self.repo.list_settlements(seller_id=seller_id, status=status)

    # ---------- transitions ----------

    def approve(self, settlement_id: int) -> Settlement:
        def apply(s: Settlement):
            s.approved_at = self.clock()
        return self._transition(settlement_id, "approve", (SettlementStatus.PENDING,),
                                SettlementStatus.APPROVED, apply, noop_in=(SettlementStatus.APPROVED,))

    def hold(self, settlement_id: int, reason: str) -> Settlement:
        reason = (reason or "").strip()

        def apply(s: Settlement):
            # checked after the state so a paid batch still reports SettlementClosed
            if not reason:
                raise ValidationError("A hold reason is required")
            s.hold_reason = reason
        return self._transition(settlement_id, "hold", (SettlementStatus.PENDING,),
                                SettlementStatus.ON_HOLD, apply)

    def release(self, settlement_id: int) -> Settlement:
        def apply(s: Settlement):
            s.hold_reason = None
        return self._transition(settlement_id, "release", (SettlementStatus.ON_HOLD,),
                                SettlementStatus.PENDING, apply)

    def mark_paid(self, settlement_id: int, payment_reference: str) -> Settlement:
        payment_reference = (payment_reference or "").strip()

        def apply(s: Settlement):
            if not payment_reference:
                raise ValidationError("A payment reference is required")
            s.payment_reference = payment_reference
            s.paid_at = self.clock()
        return self._transition(settlement_id, "mark-paid", (SettlementStatus.APPROVED,),
                                SettlementStatus.PAID, apply)

    def _transition(self, settlement_id: int, action: str, allowed: Iterable[SettlementStatus],
                    target: SettlementStatus, apply: Callable[[Settlement], None],
                    noop_in: Iterable[SettlementStatus] = ()) -> Settlement:
        for _ in range(MAX_CAS_ATTEMPTS):
            s = self.get(settlement_id)
            if s.status == SettlementStatus.PAID:
                raise SettlementClosed(f"Settlement {s.id} is paid; '{action}' is not allowed",
                                       {"id": s.id, "status": s.status.value})
            if s.status in noop_in:
                return s
            if s.status not in allowed:
                raise InvalidTransition(
                    f"Settlement in status '{s.status.value}' cannot {action} "
                    f"(allowed: {', '.join(a.value for a in allowed)})",
                    {"id": s.id, "status": s.status.value},
                )
            expected = s.version
            s.status = target
            s.version = expected + 1
            apply(s)
            with self.repo.transaction():
                won = self.repo.compare_and_set(s, expected)
            if won:
                log.info("settlement %s %s → %s", s.id, action, target.value)
                return s
            log.info("settlement %s changed during %s; re-reading", settlement_id, action)
        raise InvalidTransition(f"Settlement {settlement_id} is being modified concurrently; retry",
                                {"id": settlement_id})


def _money(x, name: str) -> Decimal:
    try:
        value = Decimal(str(x if x is not None else 0))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number")
    if not value.is_finite():
        raise ValidationError(f"{name} must be a number")
    return q2(value)
