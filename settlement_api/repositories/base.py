# settlement_api/repositories/base.py
"""
Storage interfaces the services are written against.

Two backends implement them: `repositories.sql` (Flask-SQLAlchemy, used by the
app) and `repositories.memory` (used by the service tests).
Repositories hand out copies; a service must `save_*` what it changed.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import ContextManager, List, Optional, Protocol

from settlement_api.domain.entities import (
    CommissionRule, MinimumMarginRule,
    TechnicianProfile, DealerProfile, Review, JobStats, PartyRole,
    Wallet, LedgerEntry, JobPayment, Withdrawal,
    Settlement, SellerSale,
)


class CommissionRuleRepository(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def add_rule(self, rule: CommissionRule) -> CommissionRule: ...

    def get_rule(self, rule_id: int) -> Optional[CommissionRule]: ...

    def save_rule(self, rule: CommissionRule) -> CommissionRule: ...

    def list_rules(self, active_only: bool = False) -> List[CommissionRule]: ...

    def effective_rules(self, now: datetime) -> List[CommissionRule]: ...

    def add_margin_rule(self, rule: MinimumMarginRule) -> MinimumMarginRule: ...

    def effective_margin_rules(self, now: datetime) -> List[MinimumMarginRule]: ...


class TrustProfileRepository(Protocol):
    """Read-only view over the profile/job/review store owned by other services."""

    def get_technician(self, technician_id: str) -> Optional[TechnicianProfile]: ...

    def get_dealer(self, dealer_id: str) -> Optional[DealerProfile]: ...

    def reviews_for(self, reviewee_id: str, role: PartyRole) -> List[Review]: ...

    def technician_warranty_jobs(self, technician_id: str) -> int: ...

    def dealer_job_stats(self, dealer_id: str) -> JobStats: ...


class LedgerRepository(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def add_wallet(self, wallet: Wallet) -> Wallet: ...

    def get_wallet(self, wallet_id: int) -> Optional[Wallet]: ...

    def lock_wallet(self, wallet_id: int) -> Optional[Wallet]: ...

    def find_wallet(self, owner_id: str, owner_role: str) -> Optional[Wallet]: ...

    def save_wallet(self, wallet: Wallet) -> Wallet: ...

    def add_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    def entries_for(self, wallet_id: int) -> List[LedgerEntry]: ...

    def add_job_payment(self, payment: JobPayment) -> JobPayment: ...

    def get_job_payment(self, payment_id: int) -> Optional[JobPayment]: ...

    def find_job_payment(self, job_id: str) -> Optional[JobPayment]: ...

    def save_job_payment(self, payment: JobPayment) -> JobPayment: ...

    def locked_payments_due(self, now: datetime) -> List[JobPayment]: ...

    def add_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal: ...

    def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]: ...

    def save_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal: ...


class SettlementRepository(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def add_sale(self, sale: SellerSale) -> SellerSale: ...

    def unsettled_sales(self, seller_id: str, start: date, end: date) -> List[SellerSale]: ...

    def sellers_with_unsettled_sales(self, start: date, end: date) -> List[str]: ...

    def assign_sales(self, sale_ids: List[int], settlement_id: int) -> None: ...

    def find_settlement(self, seller_id: str, start: date, end: date) -> Optional[Settlement]: ...

    def add_settlement(self, settlement: Settlement) -> Optional[Settlement]:
        """Insert; returns None when a batch for the same seller/period already exists."""
        ...

    def get_settlement(self, settlement_id: int) -> Optional[Settlement]: ...

    def list_settlements(self, seller_id: Optional[str] = None,
                         status: Optional[str] = None) -> List[Settlement]: ...

    def compare_and_set(self, settlement: Settlement, expected_version: int) -> bool:
        """Persist `settlement` only if the stored version still equals `expected_version`."""
        ...
