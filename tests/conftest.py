import os
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from settlement_api import create_app
from settlement_api.extensions import db
from settlement_api.repositories.memory import (
    MemoryCommissionRuleRepository,
    MemoryLedgerRepository,
    MemorySettlementRepository,
    MemoryTrustProfileRepository,
)
from settlement_api.services.commission_resolver import CommissionResolver
from settlement_api.services.ledger import LedgerService
from settlement_api.services.payouts import JobPayoutService
from settlement_api.services.settlement import SettlementService
from settlement_api.services.trust_score import TrustScoreCalculator

NOW = datetime(2026, 3, 2, 10, 0, 0)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


# ---------- in-memory services ----------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rules_repo():
    return MemoryCommissionRuleRepository()


@pytest.fixture
def resolver(rules_repo, clock):
    return CommissionResolver(rules_repo, clock=clock)


@pytest.fixture
def profiles():
    return MemoryTrustProfileRepository()


@pytest.fixture
def trust(profiles):
    return TrustScoreCalculator(profiles)


@pytest.fixture
def ledger_repo():
    return MemoryLedgerRepository()


@pytest.fixture
def ledger(ledger_repo, clock):
    return LedgerService(ledger_repo, clock=clock)


@pytest.fixture
def payouts(resolver, ledger):
    return JobPayoutService(resolver, ledger)


@pytest.fixture
def settlement_repo():
    return MemorySettlementRepository()


@pytest.fixture
def settlements(settlement_repo, resolver, clock):
    return SettlementService(settlement_repo, resolver=resolver, clock=clock)


# ---------- flask app over sqlite ----------

@pytest.fixture(scope="function")
def app():
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    app = create_app()
    app.config["TESTING"] = True
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def headers(app):
    """Build an Authorization header for a token with the given roles/perms."""
    def make(roles=(), perms=()):
        token = create_access_token(
            identity="tester-1",
            additional_claims={"roles": list(roles), "perms": list(perms)},
        )
        return {"Authorization": f"Bearer {token}"}
    return make


@pytest.fixture
def admin(headers):
    return headers(roles=["admin"])
