# settlement_api/services/__init__.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from settlement_api.services.commission_resolver import CommissionResolver
from settlement_api.services.ledger import LedgerService
from settlement_api.services.payouts import JobPayoutService
from settlement_api.services.settlement import SettlementService
from settlement_api.services.trust_score import TrustScoreCalculator


@dataclass
class SettlementCore:
    resolver: CommissionResolver
    trust: TrustScoreCalculator
    ledger: LedgerService
    payouts: JobPayoutService
    settlements: SettlementService


def build_core(config, rules, profiles, ledger_repo, settlement_repo, clock=None) -> SettlementCore:
    """Wire the services over the given repositories using app-style config keys."""
    kw = {"clock": clock} if clock else {}
    resolver = CommissionResolver(rules, **kw)
    ledger = LedgerService(
        ledger_repo,
        min_withdraw_limit=Decimal(str(config.get("MIN_WITHDRAW_LIMIT", 500))),
        **kw,
    )
    return SettlementCore(
        resolver=resolver,
        trust=TrustScoreCalculator(profiles),
        ledger=ledger,
        payouts=JobPayoutService(
            resolver,
            ledger,
            default_hold_percentage=Decimal(str(config.get("DEFAULT_HOLD_PERCENTAGE", 20))),
            default_warranty_days=int(config.get("DEFAULT_WARRANTY_DAYS", 30)),
        ),
        settlements=SettlementService(
            settlement_repo,
            resolver=resolver,
            default_cycle=config.get("SETTLEMENT_CYCLE", "T+7"),
            **kw,
        ),
    )


def core() -> SettlementCore:
    return current_app.extensions["settlement_core"]
