# settlement_api/domain/errors.py
"""
Domain errors for the settlement core.

Every error carries a stable machine `code` and the HTTP status the API layer
answers with; the Flask error handler renders them through `fail()`.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SettlementCoreError(Exception):
    code = "SETTLEMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(SettlementCoreError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFound(SettlementCoreError):
    code = "NOT_FOUND"
    status_code = 404


# ---- commission ----

class InvalidCommissionValue(ValidationError):
    code = "INVALID_COMMISSION_VALUE"


class InvalidRuleScope(ValidationError):
    code = "INVALID_RULE_SCOPE"


class NoApplicableRule(SettlementCoreError):
    code = "NO_APPLICABLE_RULE"
    status_code = 404


class MarginBelowMinimum(ValidationError):
    code = "MARGIN_BELOW_MINIMUM"


# ---- trust score ----

class ProfileNotFound(NotFound):
    """Recorded on a trust-score result; the score itself degrades to the baseline."""
    code = "PROFILE_NOT_FOUND"


# ---- ledger ----

class InsufficientBalance(SettlementCoreError):
    code = "INSUFFICIENT_BALANCE"


class WithdrawalBelowMinimum(SettlementCoreError):
    code = "WITHDRAWAL_BELOW_MINIMUM"


class MissingBankDetails(SettlementCoreError):
    code = "MISSING_BANK_DETAILS"


class HoldAlreadyReleased(SettlementCoreError):
    code = "HOLD_ALREADY_RELEASED"
    status_code = 409


class HoldFrozen(SettlementCoreError):
    code = "HOLD_FROZEN"
    status_code = 409


class HoldForfeited(SettlementCoreError):
    code = "HOLD_FORFEITED"
    status_code = 409


class DuplicatePayment(SettlementCoreError):
    code = "DUPLICATE_PAYMENT"
    status_code = 409


class InvalidWithdrawalState(SettlementCoreError):
    code = "INVALID_WITHDRAWAL_STATE"
    status_code = 409


# ---- settlements ----

class InvalidTransition(SettlementCoreError):
    code = "INVALID_TRANSITION"
    status_code = 409


class SettlementClosed(InvalidTransition):
    code = "SETTLEMENT_CLOSED"


class InvalidCycle(ValidationError):
    code = "INVALID_CYCLE"
