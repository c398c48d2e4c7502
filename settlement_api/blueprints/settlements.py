# settlement_api/blueprints/settlements.py
from __future__ import annotations

from flask import Blueprint, request

from settlement_api.common.auth import requires_perms
from settlement_api.common.errors import APIError
from settlement_api.common.http import ok, body, page_size, as_date, as_datetime, money
from settlement_api.blueprints.commission import context_from_json
from settlement_api.domain.entities import SellerSale, Settlement, clean_id
from settlement_api.services import core

bp = Blueprint("settlements", __name__, url_prefix="/api/v1/settlements")


def _row(s: Settlement) -> dict:
    return {
        "id": s.id,
        "sellerId": s.seller_id,
        "periodStart": s.period_start.isoformat(),
        "periodEnd": s.period_end.isoformat(),
        "totalSales": money(s.total_sales),
        "commission": money(s.commission),
        "deductions": money(s.deductions),
        "settlementAmount": money(s.settlement_amount),
        "saleCount": s.sale_count,
        "status": s.status.value,
        "cycle": s.cycle,
        "dueDate": s.due_date.isoformat() if s.due_date else None,
        "holdReason": s.hold_reason,
        "paymentReference": s.payment_reference,
        "version": s.version,
        "approvedAt": s.approved_at.isoformat() if s.approved_at else None,
        "paidAt": s.paid_at.isoformat() if s.paid_at else None,
    }


def _row_sale(s: SellerSale) -> dict:
    return {
        "id": s.id,
        "sellerId": s.seller_id,
        "orderRef": s.order_ref,
        "amount": money(s.amount),
        "commission": money(s.commission),
        "deductions": money(s.deductions),
        "soldAt": s.sold_at.isoformat(),
        "settlementId": s.settlement_id,
    }


@bp.post("/sales")
@requires_perms("settlement.write")
def record_sale():
    j = body()
    sold_at = as_datetime(j.get("soldAt"))
    if j.get("soldAt") and sold_at is None:
        raise APIError("VALIDATION_ERROR", "soldAt must be an ISO datetime", 422)
    seller_id = clean_id(j.get("sellerId"))
    # sale commission is resolved with the seller as the dealer scope
    ctx = context_from_json(j)
    ctx.dealer_id = seller_id
    sale = core().settlements.record_sale(
        seller_id,
        j.get("orderRef"),
        j.get("amount"),
        sold_at=sold_at,
        deductions=j.get("deductions") or 0,
        commission=j.get("commission"),
        context=ctx,
    )
    return ok(_row_sale(sale), 201)


@bp.post("")
@requires_perms("settlement.write")
def create_batch():
    """Create (or return the existing) settlement for a seller and period."""
    j = body()
    start, end = as_date(j.get("periodStart")), as_date(j.get("periodEnd"))
    if not (j.get("sellerId") and start and end):
        raise APIError("VALIDATION_ERROR", "sellerId, periodStart, periodEnd are required", 422)
    s = core().settlements.create_batch(j["sellerId"], start, end, j.get("cycle"))
    return ok(_row(s), 201)


@bp.get("")
@requires_perms("settlement.read")
def list_batches():
    page, size = page_size()
    rows = core().settlements.list_batches(
        seller_id=request.args.get("sellerId"),
        status=request.args.get("status"),
    )
    window = rows[(page - 1) * size: page * size]
    return ok([_row(s) for s in window], page=page, size=size, total=len(rows))


@bp.get("/<int:settlement_id>")
@requires_perms("settlement.read")
def get_batch(settlement_id: int):
    return ok(_row(core().settlements.get(settlement_id)))


@bp.post("/<int:settlement_id>/approve")
@requires_perms("settlement.approve")
def approve(settlement_id: int):
    return ok(_row(core().settlements.approve(settlement_id)))


@bp.post("/<int:settlement_id>/hold")
@requires_perms("settlement.approve")
def hold(settlement_id: int):
    return ok(_row(core().settlements.hold(settlement_id, body().get("reason"))))


@bp.post("/<int:settlement_id>/release")
@requires_perms("settlement.approve")
def release(settlement_id: int):
    return ok(_row(core().settlements.release(settlement_id)))


@bp.post("/<int:settlement_id>/mark-paid")
@requires_perms("settlement.pay")
def mark_paid(settlement_id: int):
    return ok(_row(core().settlements.mark_paid(settlement_id, body().get("paymentReference"))))
