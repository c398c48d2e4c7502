from settlement_api.extensions import db
from settlement_api.domain.entities import utcnow


class SettlementRow(db.Model):
    __tablename__ = "settlements"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    total_sales = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    commission = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    settlement_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    cycle = db.Column(db.String(16), nullable=False, default="T+7")
    due_date = db.Column(db.Date)
    sale_count = db.Column(db.Integer, nullable=False, default=0)
    hold_reason = db.Column(db.String(255))
    payment_reference = db.Column(db.String(120))
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utcnow)
    approved_at = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint("seller_id", "period_start", "period_end", name="uq_settlements_seller_period"),
        db.Index("ix_settlements_status", "status"),
    )


class SellerSaleRow(db.Model):
    __tablename__ = "seller_sales"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False)
    order_ref = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    commission = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    sold_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"))

    __table_args__ = (
        db.Index("ix_seller_sales_unsettled", "seller_id", "settlement_id", "sold_at"),
    )
