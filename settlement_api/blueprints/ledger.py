# settlement_api/blueprints/ledger.py
from __future__ import annotations

from flask import Blueprint

from settlement_api.common.auth import requires_perms
from settlement_api.common.errors import APIError
from settlement_api.blueprints.commission import context_from_json
from settlement_api.common.http import ok, body, page_size, as_datetime, as_decimal, money
from settlement_api.domain.entities import (
    Balance, JobPayment, LedgerEntry, SplitPolicy, Wallet, Withdrawal,
)
from settlement_api.services import core

bp = Blueprint("ledger", __name__, url_prefix="/api/v1/ledger")


# ---------- helpers ----------

def _iso(dt):
    return dt.isoformat() if dt else None


def _row_wallet(w: Wallet) -> dict:
    return {
        "id": w.id,
        "ownerId": w.owner_id,
        "ownerRole": w.owner_role,
        "hasBankDetails": w.has_bank_details,
        "createdAt": _iso(w.created_at),
    }


def _row_balance(wallet_id: int, b: Balance) -> dict:
    return {
        "walletId": wallet_id,
        "availableBalance": money(b.available),
        "lockedBalance": money(b.locked),
        "totalBalance": money(b.total),
    }


def _row_entry(e: LedgerEntry) -> dict:
    return {
        "id": e.id,
        "walletId": e.wallet_id,
        "type": e.type.value,
        "bucket": e.bucket.value,
        "category": e.category.value,
        "amount": money(e.amount),
        "description": e.description,
        "reference": e.reference,
        "status": e.status,
        "jobPaymentId": e.job_payment_id,
        "withdrawalId": e.withdrawal_id,
        "createdAt": _iso(e.created_at),
    }


def _row_payment(p: JobPayment) -> dict:
    return {
        "id": p.id,
        "walletId": p.wallet_id,
        "jobId": p.job_id,
        "grossAmount": money(p.gross_amount),
        "commissionAmount": money(p.commission_amount),
        "immediatePayment": money(p.immediate_payment),
        "holdAmount": money(p.hold_amount),
        "warrantyEndDate": _iso(p.warranty_end_date),
        "status": p.status.value,
        "isFrozen": p.is_frozen,
        "freezeReason": p.freeze_reason,
        "releaseReason": p.release_reason,
        "releasedAt": _iso(p.released_at),
        "requiresApproval": p.requires_approval,
    }


def _row_withdrawal(w: Withdrawal) -> dict:
    return {
        "id": w.id,
        "walletId": w.wallet_id,
        "amount": money(w.amount),
        "status": w.status.value,
        "bankReference": w.bank_reference,
        "failureReason": w.failure_reason,
        "createdAt": _iso(w.created_at),
        "processedAt": _iso(w.processed_at),
    }


def _required_amount(j: dict, key: str = "amount"):
    value = as_decimal(j.get(key))
    if value is None:
        raise APIError("VALIDATION_ERROR", f"{key} is required and must be a number", 422)
    return value


def _optional_amount(j: dict, key: str):
    raw = j.get(key)
    if raw is None or raw == "":
        return None
    value = as_decimal(raw)
    if value is None:
        raise APIError("VALIDATION_ERROR", f"{key} must be a number", 422)
    return value


def _split_policy(j: dict) -> SplitPolicy:
    end = j.get("warrantyEndDate")
    policy = SplitPolicy(
        hold_percentage=_optional_amount(j, "holdPercentage"),
        hold_amount=_optional_amount(j, "holdAmount"),
        warranty_end_date=as_datetime(end),
        job_id=(j.get("jobId") or None),
        gross_amount=_optional_amount(j, "grossAmount"),
        commission_amount=_optional_amount(j, "commissionAmount"),
    )
    if end and policy.warranty_end_date is None:
        raise APIError("VALIDATION_ERROR", "warrantyEndDate must be an ISO datetime", 422)
    if j.get("warrantyDays") is not None:
        try:
            policy.warranty_days = int(j.get("warrantyDays"))
        except (TypeError, ValueError):
            raise APIError("VALIDATION_ERROR", "warrantyDays must be an integer", 422)
    return policy


# ---------- wallets ----------

@bp.post("/wallets")
@requires_perms("ledger.wallet.write")
def open_wallet():
    j = body()
    w = core().ledger.open_wallet(j.get("ownerId"), j.get("ownerRole"), bool(j.get("hasBankDetails", False)))
    return ok(_row_wallet(w), 201)


@bp.post("/<int:wallet_id>/bank-details")
@requires_perms("ledger.wallet.write")
def set_bank_details(wallet_id: int):
    j = body()
    return ok(_row_wallet(core().ledger.set_bank_details(wallet_id, bool(j.get("present", True)))))


@bp.get("/<int:wallet_id>/balance")
@requires_perms("ledger.wallet.read")
def get_balance(wallet_id: int):
    return ok(_row_balance(wallet_id, core().ledger.balance(wallet_id)))


@bp.get("/<int:wallet_id>/entries")
@requires_perms("ledger.wallet.read")
def list_entries(wallet_id: int):
    page, size = page_size()
    rows = core().ledger.entries(wallet_id)
    window = rows[(page - 1) * size: page * size]
    return ok([_row_entry(e) for e in window], page=page, size=size, total=len(rows))


@bp.get("/<int:wallet_id>/audit")
@requires_perms("ledger.wallet.read")
def audit(wallet_id: int):
    rows = core().ledger.audit(wallet_id)
    return ok([
        {**_row_entry(r["entry"]),
         "runningAvailable": money(r["available"]),
         "runningLocked": money(r["locked"]),
         "runningTotal": money(r["total"])}
        for r in rows
    ])


# ---------- credits / debits ----------

@bp.post("/<int:wallet_id>/credit")
@requires_perms("ledger.wallet.write")
def credit(wallet_id: int):
    """Credit a net payout, split into immediate and warranty-hold portions."""
    j = body()
    amount = _required_amount(j)
    payment, entries = core().ledger.credit_job_payment(
        wallet_id, amount, j.get("reference"), _split_policy(j),
    )
    return ok({
        "entries": [_row_entry(e) for e in entries],
        "jobPayment": _row_payment(payment),
        "balance": _row_balance(wallet_id, core().ledger.balance(wallet_id)),
    }, 201)


@bp.post("/<int:wallet_id>/debit")
@requires_perms("ledger.wallet.write")
def debit(wallet_id: int):
    j = body()
    amount = _required_amount(j)
    entry = core().ledger.debit(
        wallet_id, amount, j.get("reference"),
        category=(j.get("category") or "COMMISSION_CHARGEBACK").upper(),
        description=j.get("description"),
    )
    return ok({
        "entry": _row_entry(entry),
        "balance": _row_balance(wallet_id, core().ledger.balance(wallet_id)),
    }, 201)


@bp.post("/payouts")
@requires_perms("ledger.wallet.write")
def job_payout():
    """Completed job: resolve commission, check margin, credit the split payout."""
    j = body()
    wallet_id = j.get("walletId")
    if not isinstance(wallet_id, int):
        raise APIError("VALIDATION_ERROR", "walletId is required", 422)
    ctx = context_from_json(j)
    warranty_days = j.get("warrantyDays")
    try:
        warranty_days = int(warranty_days) if warranty_days is not None else None
    except (TypeError, ValueError):
        raise APIError("VALIDATION_ERROR", "warrantyDays must be an integer", 422)
    payout = core().payouts.credit_job(
        wallet_id,
        j.get("jobId"),
        _required_amount(j, "totalAmount"),
        context=ctx,
        hold_percentage=_optional_amount(j, "holdPercentage"),
        warranty_days=warranty_days,
        is_service=bool(j.get("isService", True)),
        is_product=bool(j.get("isProduct", False)),
    )
    return ok({
        "jobPayment": _row_payment(payout.payment),
        "entries": [_row_entry(e) for e in payout.entries],
        "commission": {
            "ruleId": payout.commission.rule_id,
            "ruleSource": payout.commission.source,
            "commissionType": payout.commission.commission_type.value,
            "commissionValue": str(payout.commission.commission_value),
            "commissionAmount": money(payout.commission.commission_amount),
        },
        "marginCheck": {
            "meetsMinimum": payout.margin.meets_minimum,
            "minimumRequired": money(payout.margin.minimum_required),
            "requiresApproval": payout.margin.requires_approval,
        },
    }, 201)


# ---------- holds ----------

@bp.get("/holds/<int:payment_id>")
@requires_perms("ledger.wallet.read")
def get_hold(payment_id: int):
    return ok(_row_payment(core().ledger.get_job_payment(payment_id)))


@bp.post("/holds/<int:payment_id>/release")
@requires_perms("ledger.hold.write")
def release_hold(payment_id: int):
    j = body()
    entry = core().ledger.release_hold(payment_id, (j.get("reason") or "WARRANTY_EXPIRED").upper())
    return ok({"entry": _row_entry(entry), "jobPayment": _row_payment(core().ledger.get_job_payment(payment_id))})


@bp.post("/holds/<int:payment_id>/freeze")
@requires_perms("ledger.hold.write")
def freeze_hold(payment_id: int):
    return ok(_row_payment(core().ledger.freeze_hold(payment_id, body().get("reason"))))


@bp.post("/holds/<int:payment_id>/unfreeze")
@requires_perms("ledger.hold.write")
def unfreeze_hold(payment_id: int):
    return ok(_row_payment(core().ledger.unfreeze_hold(payment_id)))


@bp.post("/holds/<int:payment_id>/forfeit")
@requires_perms("ledger.hold.write")
def forfeit_hold(payment_id: int):
    entry = core().ledger.forfeit_hold(payment_id, body().get("reason"))
    return ok({"entry": _row_entry(entry), "jobPayment": _row_payment(core().ledger.get_job_payment(payment_id))})


# ---------- withdrawals ----------

@bp.post("/<int:wallet_id>/withdrawals")
@requires_perms("ledger.withdraw")
def request_withdrawal(wallet_id: int):
    w = core().ledger.request_withdrawal(wallet_id, _required_amount(body()))
    return ok(_row_withdrawal(w), 201)


@bp.post("/withdrawals/<int:withdrawal_id>/complete")
@requires_perms("ledger.withdraw.reconcile")
def complete_withdrawal(withdrawal_id: int):
    """Bank-transfer callback: mark a pending withdrawal PAID or FAILED."""
    j = body()
    w = core().ledger.complete_withdrawal(
        withdrawal_id, j.get("status") or "", j.get("bankReference"), j.get("failureReason"),
    )
    return ok(_row_withdrawal(w))
