# settlement_api/services/trust_score.py
"""
Trust score for technicians and dealers.

Technician:
    score = ratingPoints + jobSuccessPoints + 30 + kycBonus
            - min(complaints * 5, 25) - min(penalties * 3, 15)
Dealer:
    same without the KYC bonus and penalties; warranty jobs drive the complaints penalty.

Scores are rounded half-up and clamped to [0, 100]. Any failure (unknown
party, broken data, storage error) yields BASELINE_SCORE with the error kept
on the result; nothing is raised to the caller.
"""
from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List

from settlement_api.domain.entities import (
    Badge, PartyRole, Review, TrustBreakdown, TrustScoreResult,
)
from settlement_api.domain.errors import ProfileNotFound
from settlement_api.repositories.base import TrustProfileRepository

log = logging.getLogger(__name__)

BASELINE_SCORE = 30
BASE_POINTS = 30
RATING_WEIGHT = 40
SUCCESS_WEIGHT = 30
KYC_BONUS = 10
COMPLAINT_STEP, COMPLAINT_CAP = 5, 25
PENALTY_STEP, PENALTY_CAP = 3, 15


def badge_for(score: int) -> Badge:
    if score >= 70:
        return Badge.TRUSTED
    if score >= 50:
        return Badge.NORMAL
    return Badge.RISKY


BADGE_COLORS = {Badge.TRUSTED: "green", Badge.NORMAL: "yellow", Badge.RISKY: "red"}


def _round(x: Decimal, places: str = "1") -> Decimal:
    return x.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def average_rating(reviews: List[Review]) -> Decimal:
    """Mean of locked, visible reviews to one decimal; 0 when there are none."""
    counted = [r.rating for r in reviews if r.is_locked and not r.is_hidden]
    if not counted:
        return Decimal(0)
    return _round(Decimal(sum(counted)) / Decimal(len(counted)), "0.1")


def _clamp(x: Decimal) -> int:
    return max(0, min(100, int(_round(x))))


class TrustScoreCalculator:
    def __init__(self, profiles: TrustProfileRepository):
        self.profiles = profiles

    def penalties_count(self, party_id: str, role: PartyRole) -> int:
        """Extension point: no penalty source exists yet."""
        return 0

    # ---- Result-style entry points ----

    def evaluate(self, party_id: str, role) -> TrustScoreResult:
        role = PartyRole(str(getattr(role, "value", role)).upper())
        if role == PartyRole.DEALER:
            return self.evaluate_dealer(party_id)
        return self.evaluate_technician(party_id)

    def evaluate_technician(self, technician_id: str) -> TrustScoreResult:
        return self._guarded(technician_id, PartyRole.TECHNICIAN, self._technician)

    def evaluate_dealer(self, dealer_id: str) -> TrustScoreResult:
        return self._guarded(dealer_id, PartyRole.DEALER, self._dealer)

    # ---- plain accessors ----

    def score_technician(self, technician_id: str) -> int:
        return self.evaluate_technician(technician_id).score

    def score_dealer(self, dealer_id: str) -> int:
        return self.evaluate_dealer(dealer_id).score

    def technician_breakdown(self, technician_id: str) -> TrustBreakdown:
        return self.evaluate_technician(technician_id).breakdown

    def dealer_breakdown(self, dealer_id: str) -> TrustBreakdown:
        return self.evaluate_dealer(dealer_id).breakdown

    # ---- internals ----

    def _guarded(self, party_id, role, compute) -> TrustScoreResult:
        try:
            score, breakdown = compute(party_id)
            return TrustScoreResult(party_id, role, score, badge_for(score), breakdown)
        except ProfileNotFound as e:
            log.info("trust score: %s %s not found, using baseline", role.value.lower(), party_id)
            return self._baseline(party_id, role, e)
        except Exception as e:
            log.exception("trust score computation failed for %s %s", role.value.lower(), party_id)
            return self._baseline(party_id, role, e)

    def _baseline(self, party_id, role, error) -> TrustScoreResult:
        return TrustScoreResult(
            party_id, role, BASELINE_SCORE, badge_for(BASELINE_SCORE),
            TrustBreakdown(base_score=BASELINE_SCORE), error=error,
        )

    def _rating(self, party_id: str, role: PartyRole, legacy) -> Decimal:
        avg = average_rating(self.profiles.reviews_for(party_id, role))
        if avg > 0:
            return avg
        return Decimal(legacy) if legacy else Decimal(0)

    @staticmethod
    def _success(completed: int, total: int) -> Decimal:
        return Decimal(completed) / Decimal(total) if total > 0 else Decimal(0)

    def _technician(self, technician_id: str):
        tech = self.profiles.get_technician(technician_id)
        if tech is None:
            raise ProfileNotFound("Technician not found", {"id": technician_id})

        rating = self._rating(tech.id, PartyRole.TECHNICIAN, tech.legacy_rating)
        success = self._success(tech.completed_jobs, tech.total_jobs)
        complaints = self.profiles.technician_warranty_jobs(tech.id)
        penalties = self.penalties_count(tech.id, PartyRole.TECHNICIAN)

        rating_points = rating / 5 * RATING_WEIGHT
        success_points = success * SUCCESS_WEIGHT
        kyc_bonus = KYC_BONUS if tech.kyc_completed else 0
        complaints_penalty = min(complaints * COMPLAINT_STEP, COMPLAINT_CAP)
        penalties_penalty = min(penalties * PENALTY_STEP, PENALTY_CAP)

        raw = rating_points + success_points + BASE_POINTS + kyc_bonus - complaints_penalty - penalties_penalty
        breakdown = TrustBreakdown(
            rating_points=float(_round(rating_points, "0.01")),
            rating=float(rating),
            job_success_rate_points=float(_round(success_points, "0.01")),
            job_success_rate=float(_round(success * 100, "0.01")),
            base_score=BASE_POINTS,
            kyc_bonus=kyc_bonus,
            kyc_completed=tech.kyc_completed,
            complaints_penalty=complaints_penalty,
            complaints_count=complaints,
            penalties_penalty=penalties_penalty,
            penalties_count=penalties,
        )
        return _clamp(raw), breakdown

    def _dealer(self, dealer_id: str):
        dealer = self.profiles.get_dealer(dealer_id)
        if dealer is None:
            raise ProfileNotFound("Dealer not found", {"id": dealer_id})

        rating = self._rating(dealer.id, PartyRole.DEALER, dealer.legacy_rating)
        stats = self.profiles.dealer_job_stats(dealer.id)
        success = self._success(stats.completed, stats.total)

        rating_points = rating / 5 * RATING_WEIGHT
        success_points = success * SUCCESS_WEIGHT
        complaints_penalty = min(stats.warranty * COMPLAINT_STEP, COMPLAINT_CAP)

        raw = rating_points + success_points + BASE_POINTS - complaints_penalty
        breakdown = TrustBreakdown(
            rating_points=float(_round(rating_points, "0.01")),
            rating=float(rating),
            job_success_rate_points=float(_round(success_points, "0.01")),
            job_success_rate=float(_round(success * 100, "0.01")),
            base_score=BASE_POINTS,
            complaints_penalty=complaints_penalty,
            complaints_count=stats.warranty,
        )
        return _clamp(raw), breakdown
