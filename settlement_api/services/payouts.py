# settlement_api/services/payouts.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from settlement_api.domain.entities import (
    JobPayment, LedgerEntry, MarginCheck, ResolvedCommission, SplitPolicy, TransactionContext,
    finite_decimal, q2,
)
from settlement_api.domain.errors import MarginBelowMinimum, ValidationError
from settlement_api.services.commission_resolver import CommissionResolver
from settlement_api.services.ledger import LedgerService

log = logging.getLogger(__name__)


@dataclass
class JobPayout:
    payment: JobPayment
    entries: List[LedgerEntry]
    commission: ResolvedCommission
    margin: MarginCheck


class JobPayoutService:
    """Completed job → commission → margin check → split credit on the worker's wallet."""

    def __init__(self, resolver: CommissionResolver, ledger: LedgerService,
                 default_hold_percentage: Decimal = Decimal("20"), default_warranty_days: int = 30):
        self.resolver = resolver
        self.ledger = ledger
        self.default_hold_percentage = Decimal(default_hold_percentage)
        self.default_warranty_days = int(default_warranty_days)

    def credit_job(self, wallet_id: int, job_id: str, gross_amount, context: Optional[TransactionContext] = None,
                   hold_percentage=None, warranty_days: Optional[int] = None,
                   warranty_end_date: Optional[datetime] = None,
                   is_service: bool = True, is_product: bool = False) -> JobPayout:
        if not job_id:
            raise ValidationError("jobId is required")
        gross = q2(finite_decimal(gross_amount, "totalAmount"))
        if gross <= 0:
            raise ValidationError("Total amount must be greater than 0")

        pct = self.default_hold_percentage if hold_percentage is None else finite_decimal(hold_percentage, "holdPercentage")
        if pct < 0 or pct > 100:
            raise ValidationError("Hold percentage must be between 0 and 100")
        days = self.default_warranty_days if warranty_days is None else int(warranty_days)
        if days < 0:
            raise ValidationError("Warranty days cannot be negative")

        ctx = context or TransactionContext()
        ctx.gross_amount = gross
        resolved = self.resolver.resolve(ctx)

        margin = self.resolver.check_minimum_margin(resolved.commission_amount, gross, is_service, is_product)
        if margin.auto_reject:
            raise MarginBelowMinimum(
                f"Commission margin {margin.actual_margin} is below the required minimum {margin.minimum_required}",
                {"rule_id": margin.rule_id, "job_id": job_id},
            )
        if margin.requires_approval:
            log.warning("job %s: margin %s below minimum %s, payout flagged for approval",
                        job_id, margin.actual_margin, margin.minimum_required)

        if resolved.net_amount <= 0:
            raise ValidationError("Commission consumes the whole job amount; nothing to credit",
                                  {"job_id": job_id, "commission": str(resolved.commission_amount)})

        policy = SplitPolicy(
            hold_percentage=pct,
            warranty_days=days,
            warranty_end_date=warranty_end_date,
            job_id=job_id,
            gross_amount=gross,
            commission_amount=resolved.commission_amount,
            requires_approval=margin.requires_approval,
        )
        payment, entries = self.ledger.credit_job_payment(wallet_id, resolved.net_amount, job_id, policy)
        return JobPayout(payment=payment, entries=entries, commission=resolved, margin=margin)
