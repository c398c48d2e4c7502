# settlement_api/repositories/sql.py
"""
Flask-SQLAlchemy implementations of the repository interfaces.

Rows are mapped onto the domain dataclasses on the way out and written back
column by column on save. All writes go through `db.session`; the outermost
`transaction()` commits or rolls back.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from settlement_api.extensions import db
from settlement_api.domain.entities import (
    CommissionRule, CommissionType, MinimumMarginRule, scope_from_fields, scope_fields,
    TechnicianProfile, DealerProfile, Review, JobStats, PartyRole,
    Wallet, LedgerEntry, EntryType, Bucket, EntryCategory,
    JobPayment, PaymentStatus, Withdrawal, WithdrawalStatus,
    Settlement, SettlementStatus, SellerSale,
)
from settlement_api.models.commission import CommissionRuleRow, MinimumMarginRuleRow
from settlement_api.models.party import TechnicianRow, DealerRow, JobReviewRow, JobRow
from settlement_api.models.wallet import WalletRow, LedgerEntryRow, JobPaymentRow, WithdrawalRow
from settlement_api.models.settlement import SettlementRow, SellerSaleRow


def _dec(x) -> Optional[Decimal]:
    return Decimal(x) if x is not None else None


def _copy_onto(row, values: dict):
    for k, v in values.items():
        setattr(row, k, v.value if isinstance(v, Enum) else v)
    return row


class _SqlRepository:
    def __init__(self):
        self._local = threading.local()

    @contextmanager
    def transaction(self):
        depth = getattr(self._local, "depth", 0)
        self._local.depth = depth + 1
        try:
            yield
            if depth == 0:
                db.session.commit()
        except BaseException:
            if depth == 0:
                db.session.rollback()
            raise
        finally:
            self._local.depth = depth

    def _insert(self, row):
        db.session.add(row)
        db.session.flush()
        return row


# ---------- commission ----------

def _rule_from_row(r: CommissionRuleRow) -> CommissionRule:
    return CommissionRule(
        id=r.id,
        commission_type=CommissionType(r.commission_type),
        commission_value=_dec(r.commission_value),
        scope=scope_from_fields(r.job_type, r.city, r.region, r.dealer_id,
                                r.service_category_id, r.service_sub_category_id),
        effective_from=r.effective_from,
        effective_to=r.effective_to,
        is_active=bool(r.is_active),
        created_by=r.created_by,
        notes=r.notes,
        created_at=r.created_at,
    )


def _rule_values(rule: CommissionRule) -> dict:
    values = dict(
        commission_type=rule.commission_type,
        commission_value=rule.commission_value,
        effective_from=rule.effective_from,
        effective_to=rule.effective_to,
        is_active=rule.is_active,
        created_by=rule.created_by,
        notes=rule.notes,
        created_at=rule.created_at,
    )
    values.update(scope_fields(rule.scope))
    return values


def _margin_from_row(r: MinimumMarginRuleRow) -> MinimumMarginRule:
    return MinimumMarginRule(
        id=r.id,
        minimum_margin_percent=_dec(r.minimum_margin_percent),
        minimum_margin_amount=_dec(r.minimum_margin_amount),
        requires_approval=bool(r.requires_approval),
        auto_reject=bool(r.auto_reject),
        apply_to_service=bool(r.apply_to_service),
        apply_to_product=bool(r.apply_to_product),
        effective_from=r.effective_from,
        effective_to=r.effective_to,
        is_active=bool(r.is_active),
        created_at=r.created_at,
    )


def _effective(model, now: datetime):
    return (
        model.query
        .filter(model.is_active.is_(True))
        .filter(model.effective_from <= now)
        .filter((model.effective_to.is_(None)) | (model.effective_to >= now))
    )


class SqlCommissionRuleRepository(_SqlRepository):
    def add_rule(self, rule: CommissionRule) -> CommissionRule:
        row = self._insert(_copy_onto(CommissionRuleRow(), _rule_values(rule)))
        rule.id = row.id
        return rule

    def get_rule(self, rule_id: int) -> Optional[CommissionRule]:
        row = db.session.get(CommissionRuleRow, rule_id)
        return _rule_from_row(row) if row else None

    def save_rule(self, rule: CommissionRule) -> CommissionRule:
        row = db.session.get(CommissionRuleRow, rule.id)
        _copy_onto(row, _rule_values(rule))
        db.session.flush()
        return rule

    def list_rules(self, active_only: bool = False) -> List[CommissionRule]:
        q = CommissionRuleRow.query
        if active_only:
            q = q.filter(CommissionRuleRow.is_active.is_(True))
        return [_rule_from_row(r) for r in q.order_by(CommissionRuleRow.id.asc()).all()]

    def effective_rules(self, now: datetime) -> List[CommissionRule]:
        rows = _effective(CommissionRuleRow, now).order_by(CommissionRuleRow.id.asc()).all()
        return [_rule_from_row(r) for r in rows]

    def add_margin_rule(self, rule: MinimumMarginRule) -> MinimumMarginRule:
        values = {k: getattr(rule, k) for k in (
            "minimum_margin_percent", "minimum_margin_amount", "requires_approval", "auto_reject",
            "apply_to_service", "apply_to_product", "effective_from", "effective_to",
            "is_active", "created_at",
        )}
        row = self._insert(_copy_onto(MinimumMarginRuleRow(), values))
        rule.id = row.id
        return rule

    def effective_margin_rules(self, now: datetime) -> List[MinimumMarginRule]:
        rows = _effective(MinimumMarginRuleRow, now).order_by(MinimumMarginRuleRow.id.asc()).all()
        return [_margin_from_row(r) for r in rows]


# ---------- trust profiles ----------

class SqlTrustProfileRepository:
    def get_technician(self, technician_id: str) -> Optional[TechnicianProfile]:
        t = db.session.get(TechnicianRow, technician_id)
        if t is None:
            return None
        return TechnicianProfile(
            id=t.id,
            legacy_rating=_dec(t.rating),
            total_jobs=t.total_jobs or 0,
            completed_jobs=t.completed_jobs or 0,
            kyc_completed=bool(t.is_kyc_completed),
        )

    def get_dealer(self, dealer_id: str) -> Optional[DealerProfile]:
        d = db.session.get(DealerRow, dealer_id)
        return DealerProfile(id=d.id, legacy_rating=_dec(d.rating)) if d else None

    def reviews_for(self, reviewee_id: str, role: PartyRole) -> List[Review]:
        rows = (
            JobReviewRow.query
            .filter(JobReviewRow.reviewee_id == reviewee_id,
                    JobReviewRow.reviewee_type == PartyRole(role).value)
            .all()
        )
        return [Review(r.reviewee_id, PartyRole(r.reviewee_type), r.rating,
                       bool(r.is_locked), bool(r.is_hidden)) for r in rows]

    def technician_warranty_jobs(self, technician_id: str) -> int:
        return (
            db.session.query(func.count(JobRow.id))
            .filter(JobRow.technician_id == technician_id, JobRow.status == "WARRANTY")
            .scalar()
        ) or 0

    def dealer_job_stats(self, dealer_id: str) -> JobStats:
        rows = (
            db.session.query(JobRow.status, func.count(JobRow.id))
            .filter(JobRow.dealer_id == dealer_id)
            .group_by(JobRow.status)
            .all()
        )
        by_status = {status: n for status, n in rows}
        return JobStats(
            total=sum(by_status.values()),
            completed=by_status.get("COMPLETED", 0),
            warranty=by_status.get("WARRANTY", 0),
        )


# ---------- ledger ----------

def _wallet_from_row(w: WalletRow) -> Wallet:
    return Wallet(
        id=w.id,
        owner_id=w.owner_id,
        owner_role=w.owner_role,
        available_balance=_dec(w.available_balance),
        locked_balance=_dec(w.locked_balance),
        has_bank_details=bool(w.has_bank_details),
        created_at=w.created_at,
    )


def _entry_from_row(e: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=e.id,
        wallet_id=e.wallet_id,
        type=EntryType(e.type),
        bucket=Bucket(e.bucket),
        category=EntryCategory(e.category),
        amount=_dec(e.amount),
        description=e.description or "",
        reference=e.reference,
        status=e.status,
        job_payment_id=e.job_payment_id,
        withdrawal_id=e.withdrawal_id,
        created_at=e.created_at,
    )


_PAYMENT_FIELDS = (
    "wallet_id", "job_id", "gross_amount", "commission_amount", "immediate_payment", "hold_amount",
    "warranty_end_date", "status", "is_frozen", "freeze_reason", "release_reason", "released_at",
    "requires_approval", "created_at",
)

_WITHDRAWAL_FIELDS = (
    "wallet_id", "amount", "status", "bank_reference", "failure_reason", "created_at", "processed_at",
)


def _payment_from_row(p: JobPaymentRow) -> JobPayment:
    values = {k: getattr(p, k) for k in _PAYMENT_FIELDS}
    for k in ("gross_amount", "commission_amount", "immediate_payment", "hold_amount"):
        values[k] = _dec(values[k])
    values["status"] = PaymentStatus(p.status)
    values["is_frozen"] = bool(p.is_frozen)
    values["requires_approval"] = bool(p.requires_approval)
    return JobPayment(id=p.id, **values)


def _withdrawal_from_row(w: WithdrawalRow) -> Withdrawal:
    values = {k: getattr(w, k) for k in _WITHDRAWAL_FIELDS}
    values["amount"] = _dec(w.amount)
    values["status"] = WithdrawalStatus(w.status)
    return Withdrawal(id=w.id, **values)


class SqlLedgerRepository(_SqlRepository):
    def add_wallet(self, wallet: Wallet) -> Wallet:
        row = self._insert(_copy_onto(WalletRow(), dict(
            owner_id=wallet.owner_id,
            owner_role=wallet.owner_role,
            available_balance=wallet.available_balance,
            locked_balance=wallet.locked_balance,
            has_bank_details=wallet.has_bank_details,
            created_at=wallet.created_at,
        )))
        wallet.id = row.id
        return wallet

    def get_wallet(self, wallet_id: int) -> Optional[Wallet]:
        row = db.session.get(WalletRow, wallet_id)
        return _wallet_from_row(row) if row else None

    def lock_wallet(self, wallet_id: int) -> Optional[Wallet]:
        row = (
            db.session.query(WalletRow)
            .filter(WalletRow.id == wallet_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        return _wallet_from_row(row) if row else None

    def find_wallet(self, owner_id: str, owner_role: str) -> Optional[Wallet]:
        row = WalletRow.query.filter_by(owner_id=owner_id, owner_role=owner_role).first()
        return _wallet_from_row(row) if row else None

    def save_wallet(self, wallet: Wallet) -> Wallet:
        row = db.session.get(WalletRow, wallet.id)
        row.available_balance = wallet.available_balance
        row.locked_balance = wallet.locked_balance
        row.has_bank_details = wallet.has_bank_details
        db.session.flush()
        return wallet

    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        row = self._insert(_copy_onto(LedgerEntryRow(), dict(
            wallet_id=entry.wallet_id,
            type=entry.type,
            bucket=entry.bucket,
            category=entry.category,
            amount=entry.amount,
            description=entry.description,
            reference=entry.reference,
            status=entry.status,
            job_payment_id=entry.job_payment_id,
            withdrawal_id=entry.withdrawal_id,
            created_at=entry.created_at,
        )))
        entry.id = row.id
        return entry

    def entries_for(self, wallet_id: int) -> List[LedgerEntry]:
        rows = (
            LedgerEntryRow.query
            .filter(LedgerEntryRow.wallet_id == wallet_id)
            .order_by(LedgerEntryRow.id.asc())
            .all()
        )
        return [_entry_from_row(e) for e in rows]

    def add_job_payment(self, payment: JobPayment) -> JobPayment:
        values = {k: getattr(payment, k) for k in _PAYMENT_FIELDS}
        row = self._insert(_copy_onto(JobPaymentRow(), values))
        payment.id = row.id
        return payment

    def get_job_payment(self, payment_id: int) -> Optional[JobPayment]:
        row = db.session.get(JobPaymentRow, payment_id, populate_existing=True)
        return _payment_from_row(row) if row else None

    def find_job_payment(self, job_id: str) -> Optional[JobPayment]:
        row = JobPaymentRow.query.filter_by(job_id=job_id).first()
        return _payment_from_row(row) if row else None

    def save_job_payment(self, payment: JobPayment) -> JobPayment:
        row = db.session.get(JobPaymentRow, payment.id)
        _copy_onto(row, {k: getattr(payment, k) for k in _PAYMENT_FIELDS})
        db.session.flush()
        return payment

    def locked_payments_due(self, now: datetime) -> List[JobPayment]:
        rows = (
            JobPaymentRow.query
            .filter(JobPaymentRow.status == PaymentStatus.LOCKED.value)
            .filter(JobPaymentRow.warranty_end_date.isnot(None))
            .filter(JobPaymentRow.warranty_end_date <= now)
            .order_by(JobPaymentRow.warranty_end_date.asc(), JobPaymentRow.id.asc())
            .all()
        )
        return [_payment_from_row(p) for p in rows]

    def add_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        values = {k: getattr(withdrawal, k) for k in _WITHDRAWAL_FIELDS}
        row = self._insert(_copy_onto(WithdrawalRow(), values))
        withdrawal.id = row.id
        return withdrawal

    def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        row = db.session.get(WithdrawalRow, withdrawal_id)
        return _withdrawal_from_row(row) if row else None

    def save_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        row = db.session.get(WithdrawalRow, withdrawal.id)
        _copy_onto(row, {k: getattr(withdrawal, k) for k in _WITHDRAWAL_FIELDS})
        db.session.flush()
        return withdrawal


# ---------- settlements ----------

_SETTLEMENT_FIELDS = (
    "seller_id", "period_start", "period_end", "total_sales", "commission", "deductions",
    "status", "cycle", "due_date", "sale_count", "hold_reason", "payment_reference",
    "version", "created_at", "approved_at", "paid_at",
)


def _settlement_values(s: Settlement) -> dict:
    values = {k: getattr(s, k) for k in _SETTLEMENT_FIELDS}
    values["status"] = SettlementStatus(s.status).value
    values["settlement_amount"] = s.settlement_amount
    return values


def _settlement_from_row(r: SettlementRow) -> Settlement:
    values = {k: getattr(r, k) for k in _SETTLEMENT_FIELDS}
    for k in ("total_sales", "commission", "deductions"):
        values[k] = _dec(values[k])
    values["status"] = SettlementStatus(r.status)
    return Settlement(id=r.id, **values)


def _sale_from_row(r: SellerSaleRow) -> SellerSale:
    return SellerSale(
        id=r.id,
        seller_id=r.seller_id,
        order_ref=r.order_ref,
        amount=_dec(r.amount),
        commission=_dec(r.commission),
        deductions=_dec(r.deductions),
        sold_at=r.sold_at,
        settlement_id=r.settlement_id,
    )


def _day_bounds(start: date, end: date):
    return datetime.combine(start, datetime.min.time()), datetime.combine(end, datetime.max.time())


class SqlSettlementRepository(_SqlRepository):
    def add_sale(self, sale: SellerSale) -> SellerSale:
        row = self._insert(SellerSaleRow(
            seller_id=sale.seller_id,
            order_ref=sale.order_ref,
            amount=sale.amount,
            commission=sale.commission,
            deductions=sale.deductions,
            sold_at=sale.sold_at,
            settlement_id=sale.settlement_id,
        ))
        sale.id = row.id
        return sale

    def _unsettled(self, start: date, end: date):
        lo, hi = _day_bounds(start, end)
        return (
            SellerSaleRow.query
            .filter(SellerSaleRow.settlement_id.is_(None))
            .filter(SellerSaleRow.sold_at >= lo, SellerSaleRow.sold_at <= hi)
        )

    def unsettled_sales(self, seller_id: str, start: date, end: date) -> List[SellerSale]:
        rows = (
            self._unsettled(start, end)
            .filter(SellerSaleRow.seller_id == seller_id)
            .order_by(SellerSaleRow.id.asc())
            .all()
        )
        return [_sale_from_row(r) for r in rows]

    def sellers_with_unsettled_sales(self, start: date, end: date) -> List[str]:
        q = self._unsettled(start, end).with_entities(SellerSaleRow.seller_id).distinct()
        return sorted(r[0] for r in q.all())

    def assign_sales(self, sale_ids: List[int], settlement_id: int) -> None:
        if not sale_ids:
            return
        db.session.execute(
            update(SellerSaleRow)
            .where(SellerSaleRow.id.in_(sale_ids))
            .values(settlement_id=settlement_id)
        )

    def find_settlement(self, seller_id: str, start: date, end: date) -> Optional[Settlement]:
        row = SettlementRow.query.filter_by(seller_id=seller_id, period_start=start, period_end=end).first()
        return _settlement_from_row(row) if row else None

    def add_settlement(self, settlement: Settlement) -> Optional[Settlement]:
        try:
            with db.session.begin_nested():
                row = SettlementRow(**_settlement_values(settlement))
                db.session.add(row)
        except IntegrityError:
            return None
        settlement.id = row.id
        return settlement

    def get_settlement(self, settlement_id: int) -> Optional[Settlement]:
        row = db.session.get(SettlementRow, settlement_id, populate_existing=True)
        return _settlement_from_row(row) if row else None

    def list_settlements(self, seller_id: Optional[str] = None,
                         status: Optional[str] = None) -> List[Settlement]:
        q = SettlementRow.query
        if seller_id:
            q = q.filter(SettlementRow.seller_id == seller_id)
        if status:
            q = q.filter(SettlementRow.status == getattr(status, "value", status))
        return [_settlement_from_row(r) for r in q.order_by(SettlementRow.id.asc()).all()]

    def compare_and_set(self, settlement: Settlement, expected_version: int) -> bool:
        values = _settlement_values(settlement)
        result = db.session.execute(
            update(SettlementRow)
            .where(SettlementRow.id == settlement.id, SettlementRow.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
