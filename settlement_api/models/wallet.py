from settlement_api.extensions import db
from settlement_api.domain.entities import utcnow


class WalletRow(db.Model):
    __tablename__ = "wallets"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False)
    owner_role = db.Column(db.String(16), nullable=False)  # TECHNICIAN | DEALER | SELLER
    # materialized from ledger_entries
    available_balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    locked_balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    has_bank_details = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("owner_id", "owner_role", name="uq_wallets_owner"),
        db.CheckConstraint("available_balance >= 0", name="ck_wallets_available_nonneg"),
        db.CheckConstraint("locked_balance >= 0", name="ck_wallets_locked_nonneg"),
    )


class LedgerEntryRow(db.Model):
    __tablename__ = "ledger_entries"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False)
    type = db.Column(db.String(8), nullable=False)        # CREDIT | DEBIT
    bucket = db.Column(db.String(16), nullable=False)     # AVAILABLE | LOCKED
    category = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    description = db.Column(db.String(255), nullable=False, default="")
    reference = db.Column(db.String(120))
    status = db.Column(db.String(16), nullable=False, default="POSTED")
    job_payment_id = db.Column(db.Integer, db.ForeignKey("job_payments.id"))
    withdrawal_id = db.Column(db.Integer, db.ForeignKey("withdrawals.id"))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_ledger_entries_amount_pos"),
        db.Index("ix_ledger_entries_wallet", "wallet_id", "id"),
    )


class JobPaymentRow(db.Model):
    __tablename__ = "job_payments"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False)
    job_id = db.Column(db.String(64), unique=True)
    gross_amount = db.Column(db.Numeric(14, 2), nullable=False)
    commission_amount = db.Column(db.Numeric(14, 2), nullable=False)
    immediate_payment = db.Column(db.Numeric(14, 2), nullable=False)
    hold_amount = db.Column(db.Numeric(14, 2), nullable=False)
    warranty_end_date = db.Column(db.DateTime)
    status = db.Column(db.String(16), nullable=False, default="LOCKED")
    is_frozen = db.Column(db.Boolean, nullable=False, default=False)
    freeze_reason = db.Column(db.String(255))
    release_reason = db.Column(db.String(32))
    released_at = db.Column(db.DateTime)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index("ix_job_payments_due", "status", "warranty_end_date"),
    )


class WithdrawalRow(db.Model):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    bank_reference = db.Column(db.String(120))
    failure_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)
    processed_at = db.Column(db.DateTime)
