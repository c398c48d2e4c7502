# Read-side mirror of the profile/job/review tables owned by the marketplace.
from settlement_api.extensions import db
from settlement_api.domain.entities import utcnow


class TechnicianRow(db.Model):
    __tablename__ = "technicians"

    id = db.Column(db.String(64), primary_key=True)
    rating = db.Column(db.Numeric(3, 1))  # legacy stored rating
    total_jobs = db.Column(db.Integer, nullable=False, default=0)
    completed_jobs = db.Column(db.Integer, nullable=False, default=0)
    is_kyc_completed = db.Column(db.Boolean, nullable=False, default=False)


class DealerRow(db.Model):
    __tablename__ = "dealers"

    id = db.Column(db.String(64), primary_key=True)
    rating = db.Column(db.Numeric(3, 1))


class JobReviewRow(db.Model):
    __tablename__ = "job_reviews"

    id = db.Column(db.Integer, primary_key=True)
    reviewee_id = db.Column(db.String(64), nullable=False)
    reviewee_type = db.Column(db.String(16), nullable=False)  # TECHNICIAN | DEALER
    rating = db.Column(db.Integer, nullable=False)
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    is_hidden = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index("ix_job_reviews_reviewee", "reviewee_id", "reviewee_type"),
    )


class JobRow(db.Model):
    __tablename__ = "jobs"

    id = db.Column(db.String(64), primary_key=True)
    technician_id = db.Column(db.String(64), index=True)
    dealer_id = db.Column(db.String(64), index=True)
    status = db.Column(db.String(32), nullable=False)  # ... | COMPLETED | WARRANTY
