# settlement_api/blueprints/trust_score.py
from dataclasses import asdict

from flask import Blueprint, request

from settlement_api.common.auth import requires_perms
from settlement_api.common.http import ok, fail
from settlement_api.domain.entities import PartyRole
from settlement_api.services import core
from settlement_api.services.trust_score import BADGE_COLORS

bp = Blueprint("trust_score", __name__, url_prefix="/api/v1/trust-score")

_BREAKDOWN_KEYS = {
    "rating_points": "ratingPoints",
    "rating": "rating",
    "job_success_rate_points": "jobSuccessRatePoints",
    "job_success_rate": "jobSuccessRate",
    "base_score": "baseScore",
    "kyc_bonus": "kycBonus",
    "kyc_completed": "kycCompleted",
    "complaints_penalty": "complaintsPenalty",
    "complaints_count": "complaintsCount",
    "penalties_penalty": "penaltiesPenalty",
    "penalties_count": "penaltiesCount",
}


@bp.get("/<party_id>")
@requires_perms("trust.read")
def get_trust_score(party_id: str):
    role = (request.args.get("role") or "TECHNICIAN").strip().upper()
    if role not in PartyRole.__members__:
        return fail("role must be TECHNICIAN or DEALER", 422, code="VALIDATION_ERROR")

    result = core().trust.evaluate(party_id, PartyRole[role])
    breakdown = {_BREAKDOWN_KEYS[k]: v for k, v in asdict(result.breakdown).items()}
    if role == PartyRole.DEALER.value:
        for k in ("kycBonus", "kycCompleted", "penaltiesPenalty", "penaltiesCount"):
            breakdown.pop(k, None)

    data = {
        "partyId": party_id,
        "role": role,
        "score": result.score,
        "badge": result.badge.value,
        "badgeColor": BADGE_COLORS[result.badge],
        "breakdown": breakdown,
    }
    if not result.ok:
        # baseline score; callers still get a usable value
        return ok(data, fallback=True, reason=getattr(result.error, "code", "TRUST_SCORE_ERROR"))
    return ok(data)
