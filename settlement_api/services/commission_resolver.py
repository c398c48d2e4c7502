# settlement_api/services/commission_resolver.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Sequence, Tuple

from settlement_api.domain.entities import (
    CommissionRule, CommissionType, MinimumMarginRule, MarginCheck, ResolvedCommission,
    TransactionContext, RuleScope, DefaultScope, DealerScoped, CategoryScoped, ContextScoped,
    finite_decimal, scope_from_fields, q2, utcnow, ZERO,
)
from settlement_api.domain.errors import (
    InvalidCommissionValue, NoApplicableRule, NotFound, ValidationError,
)
from settlement_api.repositories.base import CommissionRuleRepository

log = logging.getLogger(__name__)


# ---------- precedence ----------

def _eq(rule_value, ctx_value) -> bool:
    return rule_value is None or rule_value == ctx_value


def _dealer_sub(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, DealerScoped) and s.service_sub_category_id is not None
            and s.dealer_id == c.dealer_id
            and s.service_sub_category_id == c.service_sub_category_id
            and _eq(s.service_category_id, c.service_category_id))


def _dealer_cat(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, DealerScoped) and s.service_sub_category_id is None
            and s.service_category_id is not None
            and s.dealer_id == c.dealer_id
            and s.service_category_id == c.service_category_id)


def _dealer(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, DealerScoped) and s.service_category_id is None
            and s.service_sub_category_id is None and s.dealer_id == c.dealer_id)


def _sub(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, CategoryScoped) and s.service_sub_category_id is not None
            and s.service_sub_category_id == c.service_sub_category_id
            and _eq(s.service_category_id, c.service_category_id))


def _cat(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, CategoryScoped) and s.service_sub_category_id is None
            and s.service_category_id is not None
            and s.service_category_id == c.service_category_id)


def _context_match(s: ContextScoped, c: TransactionContext) -> bool:
    return _eq(s.job_type, c.job_type) and _eq(s.city, c.city) and _eq(s.region, c.region)


def _city(s: RuleScope, c: TransactionContext) -> bool:
    return isinstance(s, ContextScoped) and s.city is not None and _context_match(s, c)


def _region(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, ContextScoped) and s.city is None and s.region is not None
            and _context_match(s, c))


def _job_type(s: RuleScope, c: TransactionContext) -> bool:
    return (isinstance(s, ContextScoped) and s.city is None and s.region is None
            and s.job_type is not None and _context_match(s, c))


def _default(s: RuleScope, c: TransactionContext) -> bool:
    return isinstance(s, DefaultScope)


# Most specific first. Dealer tiers, then category tiers, then context tiers,
# then the single default. The label is reported back as the rule source.
PRECEDENCE: Sequence[Tuple[str, Callable[[RuleScope, TransactionContext], bool]]] = (
    ("dealer-serviceSubCategory", _dealer_sub),
    ("dealer-serviceCategory", _dealer_cat),
    ("dealer", _dealer),
    ("serviceSubCategory", _sub),
    ("serviceCategory", _cat),
    ("city", _city),
    ("region", _region),
    ("jobType", _job_type),
    ("default", _default),
)


def select_rule(rules: List[CommissionRule], ctx: TransactionContext) -> Optional[Tuple[str, CommissionRule]]:
    """
    Pick the single applicable rule for `ctx` out of already-effective `rules`.
    Within a tier the most recently created rule wins; id breaks exact ties.
    """
    newest_first = sorted(rules, key=lambda r: (r.created_at, r.id or 0), reverse=True)
    for source, matches in PRECEDENCE:
        for rule in newest_first:
            if matches(rule.scope, ctx):
                return source, rule
    return None


# ---------- amount math ----------

def validate_commission(commission_type, commission_value) -> Tuple[CommissionType, Decimal]:
    try:
        ctype = CommissionType(str(commission_type).upper())
    except ValueError:
        raise InvalidCommissionValue(
            "Invalid commission type or value",
            {"commission_type": commission_type},
        )
    if commission_value is None or isinstance(commission_value, bool):
        raise InvalidCommissionValue("Invalid commission type or value", {"commission_value": commission_value})
    try:
        value = Decimal(str(commission_value))
    except (InvalidOperation, ValueError):
        raise InvalidCommissionValue("Invalid commission type or value", {"commission_value": commission_value})
    if not value.is_finite() or value < 0:
        raise InvalidCommissionValue("Commission value must be a number >= 0", {"commission_value": str(value)})
    if ctype == CommissionType.PERCENTAGE and value > 100:
        raise InvalidCommissionValue("Percentage commission cannot exceed 100", {"commission_value": str(value)})
    return ctype, value


def commission_amount(commission_type: CommissionType, commission_value: Decimal, gross_amount: Decimal) -> Decimal:
    """PERCENTAGE → gross * value / 100; FIXED → value, capped at gross."""
    gross = Decimal(gross_amount)
    if commission_type == CommissionType.PERCENTAGE:
        return q2(gross * commission_value / Decimal(100))
    return q2(min(commission_value, gross))


# ---------- service ----------

class CommissionResolver:
    def __init__(self, rules: CommissionRuleRepository, clock: Callable[[], datetime] = utcnow):
        self.rules = rules
        self.clock = clock

    def resolve(self, ctx: TransactionContext) -> ResolvedCommission:
        """
        Return the applicable rule's type/value (and amounts when `ctx.gross_amount`
        is given). Raises NoApplicableRule when nothing matches, default included.
        """
        if ctx.gross_amount is not None:
            ctx.gross_amount = finite_decimal(ctx.gross_amount, "grossAmount")
            if ctx.gross_amount < 0:
                raise ValidationError("grossAmount must be >= 0")

        hit = select_rule(self.rules.effective_rules(self.clock()), ctx)
        if hit is None:
            raise NoApplicableRule(
                "No commission rule applies to this transaction and no default rule is configured",
                {k: v for k, v in vars(ctx).items() if v is not None and k != "gross_amount"},
            )
        source, rule = hit
        out = ResolvedCommission(
            rule_id=rule.id,
            commission_type=rule.commission_type,
            commission_value=rule.commission_value,
            source=source,
        )
        if ctx.gross_amount is not None:
            gross = q2(ctx.gross_amount)
            out.commission_amount = commission_amount(rule.commission_type, rule.commission_value, gross)
            out.net_amount = gross - out.commission_amount
        return out

    # ---- administration ----

    def create_rule(self, commission_type, commission_value, created_by: Optional[str] = None,
                    notes: Optional[str] = None, effective_from: Optional[datetime] = None,
                    effective_to: Optional[datetime] = None, **scope) -> CommissionRule:
        """
        Validate and store a rule. A new active default rule supersedes (deactivates)
        every other active default.
        """
        ctype, value = validate_commission(commission_type, commission_value)
        rule_scope = scope_from_fields(**scope)
        now = self.clock()
        start = effective_from or now
        if effective_to is not None and effective_to < start:
            raise ValidationError("effectiveTo must be on or after effectiveFrom")

        rule = CommissionRule(
            commission_type=ctype,
            commission_value=value,
            scope=rule_scope,
            effective_from=start,
            effective_to=effective_to,
            is_active=True,
            created_by=created_by,
            notes=notes,
            created_at=now,
        )
        with self.rules.transaction():
            if rule.is_default:
                for old in self.rules.list_rules(active_only=True):
                    if old.is_default:
                        old.is_active = False
                        self.rules.save_rule(old)
                        log.info("default commission rule %s superseded", old.id)
            self.rules.add_rule(rule)
        return rule

    def deactivate_rule(self, rule_id: int) -> CommissionRule:
        with self.rules.transaction():
            rule = self.rules.get_rule(rule_id)
            if rule is None:
                raise NotFound("Commission rule not found", {"id": rule_id})
            if rule.is_active:
                rule.is_active = False
                self.rules.save_rule(rule)
        return rule

    def list_rules(self, active_only: bool = False) -> List[CommissionRule]:
        return self.rules.list_rules(active_only=active_only)

    # ---- minimum margin ----

    def create_margin_rule(self, minimum_margin_percent=None, minimum_margin_amount=None,
                           requires_approval=False, auto_reject=False,
                           apply_to_service=True, apply_to_product=True,
                           effective_from: Optional[datetime] = None,
                           effective_to: Optional[datetime] = None) -> MinimumMarginRule:
        pct = _non_negative(minimum_margin_percent, "minimumMarginPercent")
        amt = _non_negative(minimum_margin_amount, "minimumMarginAmount")
        if pct is None and amt is None:
            raise ValidationError("Either minimumMarginPercent or minimumMarginAmount is required")
        if pct is not None and pct > 100:
            raise ValidationError("minimumMarginPercent cannot exceed 100")
        now = self.clock()
        rule = MinimumMarginRule(
            minimum_margin_percent=pct,
            minimum_margin_amount=amt,
            requires_approval=bool(requires_approval),
            auto_reject=bool(auto_reject),
            apply_to_service=bool(apply_to_service),
            apply_to_product=bool(apply_to_product),
            effective_from=effective_from or now,
            effective_to=effective_to,
            created_at=now,
        )
        with self.rules.transaction():
            self.rules.add_margin_rule(rule)
        return rule

    def check_minimum_margin(self, commission: Decimal, gross_amount: Decimal,
                             is_service: bool = True, is_product: bool = False) -> MarginCheck:
        """Compare the platform's margin (the commission) with the active minimum-margin rule."""
        commission = q2(finite_decimal(commission, "commissionAmount"))
        gross_amount = finite_decimal(gross_amount, "grossAmount")
        candidates = [
            r for r in self.rules.effective_margin_rules(self.clock())
            if (is_service and r.apply_to_service) or (is_product and r.apply_to_product)
        ]
        if not candidates:
            return MarginCheck(meets_minimum=True, minimum_required=ZERO, actual_margin=commission)

        rule = max(candidates, key=lambda r: (r.created_at, r.id or 0))
        if rule.minimum_margin_percent is not None:
            required = q2(Decimal(gross_amount) * rule.minimum_margin_percent / Decimal(100))
        else:
            required = q2(rule.minimum_margin_amount or ZERO)

        meets = commission >= required
        return MarginCheck(
            meets_minimum=meets,
            minimum_required=required,
            actual_margin=commission,
            requires_approval=(not meets) and rule.requires_approval,
            auto_reject=(not meets) and rule.auto_reject,
            rule_id=rule.id,
        )


def _non_negative(x, name: str) -> Optional[Decimal]:
    if x is None or x == "":
        return None
    value = finite_decimal(x, name)
    if value < 0:
        raise ValidationError(f"{name} must be >= 0")
    return value
