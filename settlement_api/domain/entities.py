# settlement_api/domain/entities.py
"""
Plain domain records shared by the services and both repository backends.

The SQL backend maps its rows onto these; the in-memory backend stores them
directly. Money is always `Decimal`, quantized with `q2()`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from settlement_api.domain.errors import InvalidRuleScope, ValidationError

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def q2(x) -> Decimal:
    return Decimal(x).quantize(CENTS, rounding=ROUND_HALF_UP)


def finite_decimal(x, name: str) -> Decimal:
    """Parse a money/percent input; NaN and infinities are rejected like text."""
    try:
        value = Decimal(str(x))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{name} must be a number")
    if not value.is_finite():
        raise ValidationError(f"{name} must be a number")
    return value


def utcnow() -> datetime:
    """Naive UTC timestamp (what the DateTime columns store)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------- commission ----------

class CommissionType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


@dataclass(frozen=True)
class DefaultScope:
    def as_fields(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class DealerScoped:
    dealer_id: str
    service_category_id: Optional[str] = None
    service_sub_category_id: Optional[str] = None

    def as_fields(self) -> Dict[str, Any]:
        return {
            "dealer_id": self.dealer_id,
            "service_category_id": self.service_category_id,
            "service_sub_category_id": self.service_sub_category_id,
        }


@dataclass(frozen=True)
class CategoryScoped:
    service_category_id: Optional[str] = None
    service_sub_category_id: Optional[str] = None

    def as_fields(self) -> Dict[str, Any]:
        return {
            "service_category_id": self.service_category_id,
            "service_sub_category_id": self.service_sub_category_id,
        }


@dataclass(frozen=True)
class ContextScoped:
    job_type: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None

    def as_fields(self) -> Dict[str, Any]:
        return {"job_type": self.job_type, "city": self.city, "region": self.region}


RuleScope = Union[DefaultScope, DealerScoped, CategoryScoped, ContextScoped]

SCOPE_FIELDS = (
    "job_type", "city", "region", "dealer_id", "service_category_id", "service_sub_category_id",
)


def clean_id(v) -> Optional[str]:
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def scope_from_fields(job_type=None, city=None, region=None, dealer_id=None,
                      service_category_id=None, service_sub_category_id=None) -> RuleScope:
    """
    Map the nullable scope columns of a stored rule onto exactly one scope variant.

    Dealer rules may narrow by category/subcategory only; context fields
    (job type, city, region) never combine with dealer or category fields.
    """
    job_type, city, region = clean_id(job_type), clean_id(city), clean_id(region)
    dealer_id = clean_id(dealer_id)
    cat, sub = clean_id(service_category_id), clean_id(service_sub_category_id)

    has_context = any((job_type, city, region))
    if dealer_id:
        if has_context:
            raise InvalidRuleScope(
                "Dealer rules cannot also be scoped by job type, city or region",
                {"dealer_id": dealer_id},
            )
        return DealerScoped(dealer_id, cat, sub)
    if cat or sub:
        if has_context:
            raise InvalidRuleScope("Category rules cannot also be scoped by job type, city or region")
        return CategoryScoped(cat, sub)
    if has_context:
        return ContextScoped(job_type, city, region)
    return DefaultScope()


def scope_fields(scope: RuleScope) -> Dict[str, Optional[str]]:
    out = {k: None for k in SCOPE_FIELDS}
    out.update(scope.as_fields())
    return out


@dataclass
class TransactionContext:
    dealer_id: Optional[str] = None
    job_type: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    service_category_id: Optional[str] = None
    service_sub_category_id: Optional[str] = None
    gross_amount: Optional[Decimal] = None

    def __post_init__(self):
        # stored rule scopes are stripped strings; ids may arrive as JSON numbers
        for name in SCOPE_FIELDS:
            setattr(self, name, clean_id(getattr(self, name)))


@dataclass
class CommissionRule:
    commission_type: CommissionType
    commission_value: Decimal
    scope: RuleScope = field(default_factory=DefaultScope)
    effective_from: datetime = field(default_factory=utcnow)
    effective_to: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def is_default(self) -> bool:
        return isinstance(self.scope, DefaultScope)

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active or self.effective_from > now:
            return False
        return self.effective_to is None or self.effective_to >= now


@dataclass
class ResolvedCommission:
    rule_id: int
    commission_type: CommissionType
    commission_value: Decimal
    source: str
    commission_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None


@dataclass
class MinimumMarginRule:
    minimum_margin_percent: Optional[Decimal] = None
    minimum_margin_amount: Optional[Decimal] = None
    requires_approval: bool = False
    auto_reject: bool = False
    apply_to_service: bool = True
    apply_to_product: bool = True
    effective_from: datetime = field(default_factory=utcnow)
    effective_to: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active or self.effective_from > now:
            return False
        return self.effective_to is None or self.effective_to >= now


@dataclass
class MarginCheck:
    meets_minimum: bool
    minimum_required: Decimal
    actual_margin: Decimal
    requires_approval: bool = False
    auto_reject: bool = False
    rule_id: Optional[int] = None


# ---------- trust score ----------

class PartyRole(str, Enum):
    TECHNICIAN = "TECHNICIAN"
    DEALER = "DEALER"


class Badge(str, Enum):
    TRUSTED = "TRUSTED"
    NORMAL = "NORMAL"
    RISKY = "RISKY"


@dataclass
class TechnicianProfile:
    id: str
    legacy_rating: Optional[Decimal] = None
    total_jobs: int = 0
    completed_jobs: int = 0
    kyc_completed: bool = False


@dataclass
class DealerProfile:
    id: str
    legacy_rating: Optional[Decimal] = None


@dataclass
class Review:
    reviewee_id: str
    reviewee_type: PartyRole
    rating: int
    is_locked: bool = True
    is_hidden: bool = False


@dataclass
class JobStats:
    total: int = 0
    completed: int = 0
    warranty: int = 0


@dataclass
class TrustBreakdown:
    rating_points: float = 0.0
    rating: float = 0.0
    job_success_rate_points: float = 0.0
    job_success_rate: float = 0.0
    base_score: int = 30
    kyc_bonus: int = 0
    kyc_completed: bool = False
    complaints_penalty: int = 0
    complaints_count: int = 0
    penalties_penalty: int = 0
    penalties_count: int = 0


@dataclass
class TrustScoreResult:
    party_id: str
    role: PartyRole
    score: int
    badge: Badge
    breakdown: TrustBreakdown
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------- ledger ----------

class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class Bucket(str, Enum):
    AVAILABLE = "AVAILABLE"
    LOCKED = "LOCKED"


class EntryCategory(str, Enum):
    JOB_PAYMENT = "JOB_PAYMENT"
    WARRANTY_HOLD = "WARRANTY_HOLD"
    HOLD_RELEASE = "HOLD_RELEASE"
    HOLD_FORFEIT = "HOLD_FORFEIT"
    WITHDRAWAL = "WITHDRAWAL"
    WITHDRAWAL_REVERSAL = "WITHDRAWAL_REVERSAL"
    COMMISSION_CHARGEBACK = "COMMISSION_CHARGEBACK"
    ADJUSTMENT = "ADJUSTMENT"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    PAID = "PAID"
    FORFEITED = "FORFEITED"


class ReleaseReason(str, Enum):
    WARRANTY_EXPIRED = "WARRANTY_EXPIRED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


ENTRY_POSTED = "POSTED"


@dataclass
class Wallet:
    owner_id: str
    owner_role: str
    available_balance: Decimal = ZERO
    locked_balance: Decimal = ZERO
    has_bank_details: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def total_balance(self) -> Decimal:
        return self.available_balance + self.locked_balance


@dataclass
class LedgerEntry:
    wallet_id: int
    type: EntryType
    bucket: Bucket
    category: EntryCategory
    amount: Decimal
    description: str = ""
    reference: Optional[str] = None
    status: str = ENTRY_POSTED
    job_payment_id: Optional[int] = None
    withdrawal_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == EntryType.CREDIT else -self.amount


@dataclass
class SplitPolicy:
    """How a net payout is divided between the available and locked buckets."""
    hold_percentage: Optional[Decimal] = None
    hold_amount: Optional[Decimal] = None
    warranty_days: Optional[int] = None
    warranty_end_date: Optional[datetime] = None
    job_id: Optional[str] = None
    gross_amount: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    requires_approval: bool = False


@dataclass
class JobPayment:
    wallet_id: int
    job_id: Optional[str]
    gross_amount: Decimal
    commission_amount: Decimal
    immediate_payment: Decimal
    hold_amount: Decimal
    warranty_end_date: Optional[datetime] = None
    status: PaymentStatus = PaymentStatus.LOCKED
    is_frozen: bool = False
    freeze_reason: Optional[str] = None
    release_reason: Optional[str] = None
    released_at: Optional[datetime] = None
    requires_approval: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def net_amount(self) -> Decimal:
        return self.gross_amount - self.commission_amount


@dataclass
class Balance:
    available: Decimal
    locked: Decimal

    @property
    def total(self) -> Decimal:
        return self.available + self.locked


@dataclass
class Withdrawal:
    wallet_id: int
    amount: Decimal
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    bank_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    id: Optional[int] = None


# ---------- settlements ----------

class SettlementStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ON_HOLD = "ON_HOLD"
    PAID = "PAID"


@dataclass
class SellerSale:
    seller_id: str
    order_ref: str
    amount: Decimal
    commission: Decimal = ZERO
    deductions: Decimal = ZERO
    sold_at: datetime = field(default_factory=utcnow)
    settlement_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Settlement:
    seller_id: str
    period_start: date
    period_end: date
    total_sales: Decimal = ZERO
    commission: Decimal = ZERO
    deductions: Decimal = ZERO
    status: SettlementStatus = SettlementStatus.PENDING
    cycle: str = "T+7"
    due_date: Optional[date] = None
    sale_count: int = 0
    hold_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def settlement_amount(self) -> Decimal:
        return q2(self.total_sales - self.commission - self.deductions)


@dataclass
class SweepResult:
    released: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)
