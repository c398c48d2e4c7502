# settlement_api/services/ledger.py
"""
Wallet ledger with warranty holds.

Every balance movement is an immutable LedgerEntry in one of two buckets
(AVAILABLE, LOCKED). Wallet balance columns are a cache rebuilt from the
entries after each mutation. Mutations on one wallet run under that wallet's
lock plus a repository transaction; different wallets never share a lock.
"""
from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from settlement_api.domain.entities import (
    Balance, Bucket, EntryCategory, EntryType, JobPayment, LedgerEntry, PaymentStatus,
    ReleaseReason, SplitPolicy, SweepResult, Wallet, Withdrawal, WithdrawalStatus,
    finite_decimal, q2, utcnow, ZERO,
)
from settlement_api.domain.errors import (
    DuplicatePayment, HoldAlreadyReleased, HoldForfeited, HoldFrozen, InsufficientBalance,
    InvalidWithdrawalState, MissingBankDetails, NotFound, ValidationError, WithdrawalBelowMinimum,
)
from settlement_api.repositories.base import LedgerRepository

log = logging.getLogger(__name__)

DEFAULT_MIN_WITHDRAW = Decimal("500")
WALLET_ROLES = ("TECHNICIAN", "DEALER", "SELLER")
# withdrawals, holds and releases have their own operations
DEBIT_CATEGORIES = (EntryCategory.COMMISSION_CHARGEBACK, EntryCategory.ADJUSTMENT)


def _amount(x, name: str = "amount") -> Decimal:
    value = q2(finite_decimal(x, name))
    if value <= 0:
        raise ValidationError(f"{name} must be greater than 0")
    return value


def derive_balance(entries: Iterable[LedgerEntry]) -> Balance:
    available = locked = ZERO
    for e in entries:
        if e.bucket == Bucket.AVAILABLE:
            available += e.signed_amount
        else:
            locked += e.signed_amount
    return Balance(available=q2(available), locked=q2(locked))


def split_payout(net: Decimal, policy: SplitPolicy) -> Tuple[Decimal, Decimal]:
    """Return (immediate, hold) for a net payout; the two always sum to `net`."""
    if policy.hold_amount is not None:
        hold = q2(finite_decimal(policy.hold_amount, "holdAmount"))
        if hold < 0 or hold > net:
            raise ValidationError("holdAmount must be between 0 and the net amount")
    else:
        pct = finite_decimal(policy.hold_percentage or 0, "holdPercentage")
        if pct < 0 or pct > 100:
            raise ValidationError("holdPercentage must be between 0 and 100")
        hold = q2(net * pct / Decimal(100))
    return net - hold, hold


class LedgerService:
    def __init__(self, repo: LedgerRepository, min_withdraw_limit: Decimal = DEFAULT_MIN_WITHDRAW,
                 clock: Callable[[], datetime] = utcnow):
        self.repo = repo
        self.min_withdraw_limit = Decimal(min_withdraw_limit)
        self.clock = clock
        # entries drop out once no thread holds or waits on the wallet
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ---------- locking ----------

    def _lock_for(self, wallet_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(wallet_id)
            if lock is None:
                lock = self._locks[wallet_id] = threading.RLock()
            return lock

    @contextmanager
    def _wallet_tx(self, wallet_id: int):
        """Serialize on one wallet and run the body as a single transaction."""
        with self._lock_for(wallet_id):
            with self.repo.transaction():
                wallet = self.repo.lock_wallet(wallet_id)
                if wallet is None:
                    raise NotFound("Wallet not found", {"wallet_id": wallet_id})
                yield wallet

    def _post(self, wallet: Wallet, type_: EntryType, bucket: Bucket, category: EntryCategory,
              amount: Decimal, description: str, reference: Optional[str] = None,
              job_payment_id: Optional[int] = None, withdrawal_id: Optional[int] = None) -> LedgerEntry:
        entry = LedgerEntry(
            wallet_id=wallet.id,
            type=type_,
            bucket=bucket,
            category=category,
            amount=amount,
            description=description,
            reference=reference,
            job_payment_id=job_payment_id,
            withdrawal_id=withdrawal_id,
            created_at=self.clock(),
        )
        return self.repo.add_entry(entry)

    def _refresh_cache(self, wallet: Wallet) -> Balance:
        bal = derive_balance(self.repo.entries_for(wallet.id))
        if bal.available < 0 or bal.locked < 0:
            # unreachable unless a check above is wrong; abort the transaction
            raise InsufficientBalance("Operation would make a wallet balance negative",
                                      {"wallet_id": wallet.id})
        wallet.available_balance, wallet.locked_balance = bal.available, bal.locked
        self.repo.save_wallet(wallet)
        return bal

    # ---------- wallets ----------

    def open_wallet(self, owner_id: str, owner_role: str, has_bank_details: bool = False) -> Wallet:
        owner_id = (owner_id or "").strip()
        role = (owner_role or "").strip().upper()
        if not owner_id:
            raise ValidationError("ownerId is required")
        if role not in WALLET_ROLES:
            raise ValidationError(f"ownerRole must be one of {', '.join(WALLET_ROLES)}")
        with self.repo.transaction():
            existing = self.repo.find_wallet(owner_id, role)
            if existing:
                if has_bank_details and not existing.has_bank_details:
                    existing.has_bank_details = True
                    self.repo.save_wallet(existing)
                return existing
            wallet = Wallet(owner_id=owner_id, owner_role=role, has_bank_details=bool(has_bank_details),
                            created_at=self.clock())
            return self.repo.add_wallet(wallet)

    def set_bank_details(self, wallet_id: int, present: bool = True) -> Wallet:
        with self._wallet_tx(wallet_id) as wallet:
            wallet.has_bank_details = bool(present)
            self.repo.save_wallet(wallet)
            return wallet

    def get_wallet(self, wallet_id: int) -> Wallet:
        wallet = self.repo.get_wallet(wallet_id)
        if wallet is None:
            raise NotFound("Wallet not found", {"wallet_id": wallet_id})
        return wallet

    def balance(self, wallet_id: int) -> Balance:
        """Balance derived from entry history; a diverged cache is logged and rewritten."""
        with self._lock_for(wallet_id):
            wallet = self.get_wallet(wallet_id)
            bal = derive_balance(self.repo.entries_for(wallet_id))
            if bal.available != wallet.available_balance or bal.locked != wallet.locked_balance:
                log.warning(
                    "wallet %s cache diverged (cached available=%s locked=%s, entries available=%s locked=%s); repairing",
                    wallet_id, wallet.available_balance, wallet.locked_balance, bal.available, bal.locked,
                )
                with self._wallet_tx(wallet_id) as locked_wallet:
                    bal = self._refresh_cache(locked_wallet)
        return bal

    def entries(self, wallet_id: int) -> List[LedgerEntry]:
        self.get_wallet(wallet_id)
        return self.repo.entries_for(wallet_id)

    def audit(self, wallet_id: int) -> List[dict]:
        """Replay entries with running balances; each row's total equals credits minus debits so far."""
        rows, available, locked = [], ZERO, ZERO
        for e in self.entries(wallet_id):
            if e.bucket == Bucket.AVAILABLE:
                available += e.signed_amount
            else:
                locked += e.signed_amount
            rows.append({"entry": e, "available": available, "locked": locked, "total": available + locked})
        return rows

    # ---------- credits & holds ----------

    def post_credit(self, wallet_id: int, amount, reference: Optional[str] = None,
                    split_policy: Optional[SplitPolicy] = None) -> LedgerEntry:
        """
        Credit a job's net payout. The immediate part lands in AVAILABLE, the hold
        part in LOCKED tagged with the job payment. Returns the first posted entry
        (AVAILABLE unless the whole payout is held).
        """
        payment, entries = self.credit_job_payment(wallet_id, amount, reference, split_policy)
        return entries[0]

    def credit_job_payment(self, wallet_id: int, amount, reference: Optional[str] = None,
                           split_policy: Optional[SplitPolicy] = None) -> Tuple[JobPayment, List[LedgerEntry]]:
        policy = split_policy or SplitPolicy()
        net = _amount(amount)
        gross = q2(finite_decimal(policy.gross_amount, "grossAmount")) if policy.gross_amount is not None else net
        commission = (q2(finite_decimal(policy.commission_amount, "commissionAmount"))
                  if policy.commission_amount is not None else gross - net)
        if gross - commission != net:
            raise ValidationError("amount must equal grossAmount - commissionAmount",
                                  {"gross": str(gross), "commission": str(commission), "amount": str(net)})
        immediate, hold = split_payout(net, policy)

        now = self.clock()
        warranty_end = policy.warranty_end_date
        if warranty_end is None and policy.warranty_days is not None:
            if int(policy.warranty_days) < 0:
                raise ValidationError("warrantyDays must be >= 0")
            warranty_end = now + timedelta(days=int(policy.warranty_days))
        if hold > 0 and warranty_end is None:
            raise ValidationError("A held amount needs a warranty end date or warranty days")

        ref = reference or policy.job_id
        with self._wallet_tx(wallet_id) as wallet:
            if policy.job_id and self.repo.find_job_payment(policy.job_id):
                raise DuplicatePayment("Payment split already exists for this job", {"job_id": policy.job_id})

            payment = self.repo.add_job_payment(JobPayment(
                wallet_id=wallet.id,
                job_id=policy.job_id,
                gross_amount=gross,
                commission_amount=commission,
                immediate_payment=immediate,
                hold_amount=hold,
                warranty_end_date=warranty_end if hold > 0 else None,
                status=PaymentStatus.LOCKED if hold > 0 else PaymentStatus.PAID,
                released_at=None if hold > 0 else now,
                requires_approval=policy.requires_approval,
                created_at=now,
            ))
            entries = []
            if immediate > 0:
                entries.append(self._post(wallet, EntryType.CREDIT, Bucket.AVAILABLE, EntryCategory.JOB_PAYMENT,
                                          immediate, "Immediate payment", ref, job_payment_id=payment.id))
            if hold > 0:
                entries.append(self._post(wallet, EntryType.CREDIT, Bucket.LOCKED, EntryCategory.WARRANTY_HOLD,
                                          hold, f"Warranty hold until {warranty_end:%Y-%m-%d}", ref,
                                          job_payment_id=payment.id))
            self._refresh_cache(wallet)
        log.info("wallet %s credited %s (immediate=%s hold=%s) ref=%s", wallet_id, net, immediate, hold, ref)
        return payment, entries

    def get_job_payment(self, job_payment_id: int) -> JobPayment:
        payment = self.repo.get_job_payment(job_payment_id)
        if payment is None:
            raise NotFound("Job payment not found", {"job_payment_id": job_payment_id})
        return payment

    def _wallet_of(self, job_payment_id: int):
        """Wallet owning a job payment; callers re-read the payment under that wallet's lock."""
        payment = self.get_job_payment(job_payment_id)
        return payment.wallet_id

    @staticmethod
    def _ensure_locked(payment: JobPayment):
        if payment.status == PaymentStatus.PAID:
            raise HoldAlreadyReleased("Warranty hold already released", {"job_payment_id": payment.id})
        if payment.status == PaymentStatus.FORFEITED:
            raise HoldForfeited("Warranty hold was forfeited", {"job_payment_id": payment.id})
        if payment.status != PaymentStatus.LOCKED:
            raise HoldAlreadyReleased(f"Job payment in status {payment.status.value} has no hold",
                                      {"job_payment_id": payment.id})

    def release_hold(self, job_payment_id: int, reason=ReleaseReason.WARRANTY_EXPIRED) -> LedgerEntry:
        """
        Move a job's held amount from LOCKED to AVAILABLE. Valid once per hold.
        A frozen hold only releases on DISPUTE_RESOLVED.
        """
        try:
            reason = ReleaseReason(getattr(reason, "value", reason))
        except ValueError:
            raise ValidationError("reason must be WARRANTY_EXPIRED or DISPUTE_RESOLVED")

        wallet_id = self._wallet_of(job_payment_id)
        with self._wallet_tx(wallet_id) as wallet:
            payment = self.get_job_payment(job_payment_id)
            self._ensure_locked(payment)
            if payment.is_frozen and reason == ReleaseReason.WARRANTY_EXPIRED:
                raise HoldFrozen("Hold is frozen by an open complaint", {
                    "job_payment_id": payment.id, "freeze_reason": payment.freeze_reason,
                })

            ref = payment.job_id
            self._post(wallet, EntryType.DEBIT, Bucket.LOCKED, EntryCategory.HOLD_RELEASE,
                       payment.hold_amount, f"Hold released ({reason.value})", ref, job_payment_id=payment.id)
            entry = self._post(wallet, EntryType.CREDIT, Bucket.AVAILABLE, EntryCategory.HOLD_RELEASE,
                               payment.hold_amount, f"Hold released ({reason.value})", ref,
                               job_payment_id=payment.id)
            payment.status = PaymentStatus.PAID
            payment.is_frozen = False
            payment.release_reason = reason.value
            payment.released_at = self.clock()
            self.repo.save_job_payment(payment)
            self._refresh_cache(wallet)
        log.info("hold %s released (%s) amount=%s", job_payment_id, reason.value, payment.hold_amount)
        return entry

    def freeze_hold(self, job_payment_id: int, reason: str) -> JobPayment:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A freeze reason is required")
        wallet_id = self._wallet_of(job_payment_id)
        with self._wallet_tx(wallet_id):
            payment = self.get_job_payment(job_payment_id)
            self._ensure_locked(payment)
            payment.is_frozen = True
            payment.freeze_reason = reason
            self.repo.save_job_payment(payment)
        log.info("hold %s frozen: %s", job_payment_id, reason)
        return payment

    def unfreeze_hold(self, job_payment_id: int) -> JobPayment:
        wallet_id = self._wallet_of(job_payment_id)
        with self._wallet_tx(wallet_id):
            payment = self.get_job_payment(job_payment_id)
            self._ensure_locked(payment)
            if not payment.is_frozen:
                raise ValidationError("Hold is not frozen", {"job_payment_id": payment.id})
            payment.is_frozen = False
            payment.freeze_reason = None
            self.repo.save_job_payment(payment)
        return payment

    def forfeit_hold(self, job_payment_id: int, reason: str) -> LedgerEntry:
        """Dispute lost: the held amount leaves the wallet and the hold can never be released."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A forfeit reason is required")
        wallet_id = self._wallet_of(job_payment_id)
        with self._wallet_tx(wallet_id) as wallet:
            payment = self.get_job_payment(job_payment_id)
            self._ensure_locked(payment)
            entry = self._post(wallet, EntryType.DEBIT, Bucket.LOCKED, EntryCategory.HOLD_FORFEIT,
                               payment.hold_amount, f"Hold forfeited: {reason}", payment.job_id,
                               job_payment_id=payment.id)
            payment.status = PaymentStatus.FORFEITED
            payment.is_frozen = False
            payment.release_reason = reason
            payment.released_at = self.clock()
            self.repo.save_job_payment(payment)
            self._refresh_cache(wallet)
        log.info("hold %s forfeited: %s", job_payment_id, reason)
        return entry

    def release_expired_holds(self, now: Optional[datetime] = None,
                              has_open_dispute: Optional[Callable[[JobPayment], bool]] = None) -> SweepResult:
        """
        Release every unfrozen LOCKED hold whose warranty has ended. Holds with an
        open dispute are skipped; per-hold failures are collected, not raised.
        """
        now = now or self.clock()
        result = SweepResult()
        for payment in self.repo.locked_payments_due(now):
            if payment.is_frozen or (has_open_dispute and has_open_dispute(payment)):
                result.skipped.append(payment.id)
                continue
            try:
                self.release_hold(payment.id, ReleaseReason.WARRANTY_EXPIRED)
                result.released.append(payment.id)
            except Exception as e:
                log.warning("auto-release of hold %s failed: %s", payment.id, e)
                result.errors[payment.id] = str(e)
        return result

    # ---------- debits & withdrawals ----------

    def debit(self, wallet_id: int, amount, reference: Optional[str] = None,
              category=EntryCategory.COMMISSION_CHARGEBACK, description: Optional[str] = None) -> LedgerEntry:
        value = _amount(amount)
        try:
            category = EntryCategory(getattr(category, "value", category))
        except ValueError:
            raise ValidationError(f"Unknown ledger category {category!r}")
        if category not in DEBIT_CATEGORIES:
            raise ValidationError(
                f"{category.value} cannot be posted as a direct debit",
                {"allowed": [c.value for c in DEBIT_CATEGORIES]},
            )
        with self._wallet_tx(wallet_id) as wallet:
            return self._debit_available(wallet, value, category, description or category.value.replace("_", " ").title(),
                                         reference)

    def _debit_available(self, wallet: Wallet, value: Decimal, category: EntryCategory, description: str,
                         reference: Optional[str], withdrawal_id: Optional[int] = None) -> LedgerEntry:
        available = derive_balance(self.repo.entries_for(wallet.id)).available
        if value > available:
            raise InsufficientBalance("Insufficient balance", {
                "wallet_id": wallet.id, "available": str(available), "requested": str(value),
            })
        entry = self._post(wallet, EntryType.DEBIT, Bucket.AVAILABLE, category, value, description,
                           reference, withdrawal_id=withdrawal_id)
        self._refresh_cache(wallet)
        return entry

    def request_withdrawal(self, wallet_id: int, amount) -> Withdrawal:
        """Gate and debit a withdrawal; the bank transfer itself is reconciled by callback."""
        value = _amount(amount)
        with self._wallet_tx(wallet_id) as wallet:
            if not wallet.has_bank_details:
                raise MissingBankDetails("Bank details not completed. Please add bank details first.",
                                         {"wallet_id": wallet.id})
            if value < self.min_withdraw_limit:
                raise WithdrawalBelowMinimum(
                    f"Minimum withdrawal amount is {self.min_withdraw_limit}",
                    {"minimum": str(self.min_withdraw_limit), "requested": str(value)},
                )
            withdrawal = self.repo.add_withdrawal(Withdrawal(
                wallet_id=wallet.id, amount=value, status=WithdrawalStatus.PENDING, created_at=self.clock(),
            ))
            self._debit_available(wallet, value, EntryCategory.WITHDRAWAL, "Withdrawal request",
                                  f"WD-{withdrawal.id}", withdrawal_id=withdrawal.id)
        log.info("withdrawal %s requested on wallet %s amount=%s", withdrawal.id, wallet_id, value)
        return withdrawal

    def complete_withdrawal(self, withdrawal_id: int, status, bank_reference: Optional[str] = None,
                            failure_reason: Optional[str] = None) -> Withdrawal:
        try:
            status = WithdrawalStatus(str(getattr(status, "value", status)).upper())
        except ValueError:
            raise ValidationError("status must be PAID or FAILED")
        if status == WithdrawalStatus.PENDING:
            raise ValidationError("status must be PAID or FAILED")

        found = self.repo.get_withdrawal(withdrawal_id)
        if found is None:
            raise NotFound("Withdrawal not found", {"withdrawal_id": withdrawal_id})

        with self._wallet_tx(found.wallet_id) as wallet:
            withdrawal = self.repo.get_withdrawal(withdrawal_id)
            if withdrawal.status != WithdrawalStatus.PENDING:
                raise InvalidWithdrawalState(
                    f"Withdrawal is already {withdrawal.status.value}",
                    {"withdrawal_id": withdrawal.id},
                )
            withdrawal.status = status
            withdrawal.processed_at = self.clock()
            withdrawal.bank_reference = bank_reference
            if status == WithdrawalStatus.FAILED:
                withdrawal.failure_reason = failure_reason or "Bank transfer failed"
                self._post(wallet, EntryType.CREDIT, Bucket.AVAILABLE, EntryCategory.WITHDRAWAL_REVERSAL,
                           withdrawal.amount, "Withdrawal reversed", f"WD-{withdrawal.id}",
                           withdrawal_id=withdrawal.id)
                self._refresh_cache(wallet)
            self.repo.save_withdrawal(withdrawal)
        return withdrawal
