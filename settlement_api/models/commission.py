from settlement_api.extensions import db
from settlement_api.domain.entities import utcnow


class CommissionRuleRow(db.Model):
    __tablename__ = "commission_rules"

    id = db.Column(db.Integer, primary_key=True)
    commission_type = db.Column(db.String(16), nullable=False)  # PERCENTAGE | FIXED
    commission_value = db.Column(db.Numeric(14, 2), nullable=False)
    # scope (all null ⇒ default rule)
    job_type = db.Column(db.String(64))
    city = db.Column(db.String(120))
    region = db.Column(db.String(120))
    dealer_id = db.Column(db.String(64))
    service_category_id = db.Column(db.String(64))
    service_sub_category_id = db.Column(db.String(64))

    effective_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    effective_to = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(64))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.Index("ix_commission_rules_resolve", "is_active", "effective_from", "effective_to"),
        db.Index("ix_commission_rules_dealer", "dealer_id"),
    )


class MinimumMarginRuleRow(db.Model):
    __tablename__ = "minimum_margin_rules"

    id = db.Column(db.Integer, primary_key=True)
    minimum_margin_percent = db.Column(db.Numeric(6, 2))
    minimum_margin_amount = db.Column(db.Numeric(14, 2))
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    auto_reject = db.Column(db.Boolean, nullable=False, default=False)
    apply_to_service = db.Column(db.Boolean, nullable=False, default=True)
    apply_to_product = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    effective_to = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
