# settlement_api/repositories/memory.py
"""
In-process repositories backed by dicts.

Each repository hands out deep copies and journals every write made inside
`transaction()` so a failing operation leaves no partial effect.
"""
from __future__ import annotations

import copy
import itertools
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, List, Optional

from settlement_api.domain.entities import (
    CommissionRule, MinimumMarginRule,
    TechnicianProfile, DealerProfile, Review, JobStats, PartyRole,
    Wallet, LedgerEntry, JobPayment, Withdrawal, PaymentStatus,
    Settlement, SellerSale,
)

_MISSING = object()


class _MemoryStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._local = threading.local()
        self._seqs: Dict[str, itertools.count] = {}

    def _next_id(self, name: str) -> int:
        with self._lock:
            seq = self._seqs.setdefault(name, itertools.count(1))
            return next(seq)

    @contextmanager
    def transaction(self):
        if getattr(self._local, "journal", None) is not None:
            yield
            return
        self._local.journal = []
        try:
            yield
        except BaseException:
            with self._lock:
                for table, key, old in reversed(self._local.journal):
                    if old is _MISSING:
                        table.pop(key, None)
                    else:
                        table[key] = old
            raise
        finally:
            self._local.journal = None

    def _put(self, table: dict, key, value):
        with self._lock:
            old = table.get(key, _MISSING)
            table[key] = copy.deepcopy(value)
        journal = getattr(self._local, "journal", None)
        if journal is not None:
            journal.append((table, key, old))
        return value

    def _get(self, table: dict, key):
        with self._lock:
            row = table.get(key)
            return copy.deepcopy(row) if row is not None else None

    def _all(self, table: dict) -> list:
        with self._lock:
            return [copy.deepcopy(v) for _, v in sorted(table.items(), key=lambda kv: kv[0])]


class MemoryCommissionRuleRepository(_MemoryStore):
    def __init__(self):
        super().__init__()
        self._rules: Dict[int, CommissionRule] = {}
        self._margin_rules: Dict[int, MinimumMarginRule] = {}

    def add_rule(self, rule: CommissionRule) -> CommissionRule:
        rule.id = self._next_id("rule")
        return self._put(self._rules, rule.id, rule)

    def get_rule(self, rule_id: int) -> Optional[CommissionRule]:
        return self._get(self._rules, rule_id)

    def save_rule(self, rule: CommissionRule) -> CommissionRule:
        return self._put(self._rules, rule.id, rule)

    def list_rules(self, active_only: bool = False) -> List[CommissionRule]:
        rows = self._all(self._rules)
        return [r for r in rows if r.is_active] if active_only else rows

    def effective_rules(self, now: datetime) -> List[CommissionRule]:
        return [r for r in self._all(self._rules) if r.is_effective(now)]

    def add_margin_rule(self, rule: MinimumMarginRule) -> MinimumMarginRule:
        rule.id = self._next_id("margin_rule")
        return self._put(self._margin_rules, rule.id, rule)

    def effective_margin_rules(self, now: datetime) -> List[MinimumMarginRule]:
        return [r for r in self._all(self._margin_rules) if r.is_effective(now)]


class MemoryTrustProfileRepository(_MemoryStore):
    def __init__(self):
        super().__init__()
        self._technicians: Dict[str, TechnicianProfile] = {}
        self._dealers: Dict[str, DealerProfile] = {}
        self._reviews: Dict[int, Review] = {}
        # job id -> (technician_id, dealer_id, status)
        self._jobs: Dict[str, tuple] = {}

    # seeding helpers
    def add_technician(self, profile: TechnicianProfile) -> TechnicianProfile:
        return self._put(self._technicians, profile.id, profile)

    def add_dealer(self, profile: DealerProfile) -> DealerProfile:
        return self._put(self._dealers, profile.id, profile)

    def add_review(self, review: Review) -> Review:
        return self._put(self._reviews, self._next_id("review"), review)

    def add_job(self, job_id: str, status: str, technician_id: str = None, dealer_id: str = None):
        self._put(self._jobs, job_id, (technician_id, dealer_id, status))

    # TrustProfileRepository
    def get_technician(self, technician_id: str) -> Optional[TechnicianProfile]:
        return self._get(self._technicians, technician_id)

    def get_dealer(self, dealer_id: str) -> Optional[DealerProfile]:
        return self._get(self._dealers, dealer_id)

    def reviews_for(self, reviewee_id: str, role: PartyRole) -> List[Review]:
        return [r for r in self._all(self._reviews)
                if r.reviewee_id == reviewee_id and r.reviewee_type == role]

    def technician_warranty_jobs(self, technician_id: str) -> int:
        return sum(1 for tech, _, status in self._all(self._jobs)
                   if tech == technician_id and status == "WARRANTY")

    def dealer_job_stats(self, dealer_id: str) -> JobStats:
        stats = JobStats()
        for _, dealer, status in self._all(self._jobs):
            if dealer != dealer_id:
                continue
            stats.total += 1
            if status == "COMPLETED":
                stats.completed += 1
            elif status == "WARRANTY":
                stats.warranty += 1
        return stats


class MemoryLedgerRepository(_MemoryStore):
    def __init__(self):
        super().__init__()
        self._wallets: Dict[int, Wallet] = {}
        self._entries: Dict[int, LedgerEntry] = {}
        self._payments: Dict[int, JobPayment] = {}
        self._withdrawals: Dict[int, Withdrawal] = {}

    def add_wallet(self, wallet: Wallet) -> Wallet:
        wallet.id = self._next_id("wallet")
        return self._put(self._wallets, wallet.id, wallet)

    def get_wallet(self, wallet_id: int) -> Optional[Wallet]:
        return self._get(self._wallets, wallet_id)

    # per-wallet serialization happens in the ledger service
    lock_wallet = get_wallet

    def find_wallet(self, owner_id: str, owner_role: str) -> Optional[Wallet]:
        for w in self._all(self._wallets):
            if w.owner_id == owner_id and w.owner_role == owner_role:
                return w
        return None

    def save_wallet(self, wallet: Wallet) -> Wallet:
        return self._put(self._wallets, wallet.id, wallet)

    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        entry.id = self._next_id("entry")
        return self._put(self._entries, entry.id, entry)

    def entries_for(self, wallet_id: int) -> List[LedgerEntry]:
        return [e for e in self._all(self._entries) if e.wallet_id == wallet_id]

    def add_job_payment(self, payment: JobPayment) -> JobPayment:
        payment.id = self._next_id("payment")
        return self._put(self._payments, payment.id, payment)

    def get_job_payment(self, payment_id: int) -> Optional[JobPayment]:
        return self._get(self._payments, payment_id)

    def find_job_payment(self, job_id: str) -> Optional[JobPayment]:
        for p in self._all(self._payments):
            if p.job_id == job_id:
                return p
        return None

    def save_job_payment(self, payment: JobPayment) -> JobPayment:
        return self._put(self._payments, payment.id, payment)

    def locked_payments_due(self, now: datetime) -> List[JobPayment]:
        return [p for p in self._all(self._payments)
                if p.status == PaymentStatus.LOCKED
                and p.warranty_end_date is not None
                and p.warranty_end_date <= now]

    def add_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        withdrawal.id = self._next_id("withdrawal")
        return self._put(self._withdrawals, withdrawal.id, withdrawal)

    def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        return self._get(self._withdrawals, withdrawal_id)

    def save_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        return self._put(self._withdrawals, withdrawal.id, withdrawal)


class MemorySettlementRepository(_MemoryStore):
    def __init__(self):
        super().__init__()
        self._sales: Dict[int, SellerSale] = {}
        self._settlements: Dict[int, Settlement] = {}
        self._cas_lock = threading.Lock()

    def add_sale(self, sale: SellerSale) -> SellerSale:
        sale.id = self._next_id("sale")
        return self._put(self._sales, sale.id, sale)

    def _in_period(self, sale: SellerSale, start: date, end: date) -> bool:
        return sale.settlement_id is None and start <= sale.sold_at.date() <= end

    def unsettled_sales(self, seller_id: str, start: date, end: date) -> List[SellerSale]:
        return [s for s in self._all(self._sales)
                if s.seller_id == seller_id and self._in_period(s, start, end)]

    def sellers_with_unsettled_sales(self, start: date, end: date) -> List[str]:
        return sorted({s.seller_id for s in self._all(self._sales) if self._in_period(s, start, end)})

    def assign_sales(self, sale_ids: List[int], settlement_id: int) -> None:
        for sid in sale_ids:
            sale = self._get(self._sales, sid)
            sale.settlement_id = settlement_id
            self._put(self._sales, sid, sale)

    def find_settlement(self, seller_id: str, start: date, end: date) -> Optional[Settlement]:
        for s in self._all(self._settlements):
            if s.seller_id == seller_id and s.period_start == start and s.period_end == end:
                return s
        return None

    def add_settlement(self, settlement: Settlement) -> Optional[Settlement]:
        with self._cas_lock:
            if self.find_settlement(settlement.seller_id, settlement.period_start, settlement.period_end):
                return None
            settlement.id = self._next_id("settlement")
            return self._put(self._settlements, settlement.id, settlement)

    def get_settlement(self, settlement_id: int) -> Optional[Settlement]:
        return self._get(self._settlements, settlement_id)

    def list_settlements(self, seller_id: Optional[str] = None,
                         status: Optional[str] = None) -> List[Settlement]:
        rows = self._all(self._settlements)
        if seller_id:
            rows = [s for s in rows if s.seller_id == seller_id]
        if status:
            rows = [s for s in rows if s.status == status]
        return rows

    def compare_and_set(self, settlement: Settlement, expected_version: int) -> bool:
        with self._cas_lock:
            current = self._get(self._settlements, settlement.id)
            if current is None or current.version != expected_version:
                return False
            self._put(self._settlements, settlement.id, settlement)
            return True
