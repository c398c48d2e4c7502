# settlement_api/blueprints/commission.py
from __future__ import annotations

from flask import Blueprint, request
from flask_jwt_extended import get_jwt_identity

from settlement_api.common.auth import requires_perms
from settlement_api.common.errors import APIError
from settlement_api.common.http import ok, body, as_datetime, as_decimal, money
from settlement_api.domain.entities import (
    CommissionRule, MarginCheck, MinimumMarginRule, ResolvedCommission, TransactionContext, scope_fields,
)
from settlement_api.services import core

bp = Blueprint("commission", __name__, url_prefix="/api/v1/commission")


# ---------- helpers ----------

def _s(j: dict, *keys):
    """First non-empty value among camelCase / snake_case spellings."""
    for k in keys:
        v = j.get(k)
        if v not in (None, ""):
            return str(v).strip() or None
    return None


def context_from_json(j: dict) -> TransactionContext:
    gross = j.get("grossAmount", j.get("gross_amount", j.get("totalAmount")))
    ctx = TransactionContext(
        dealer_id=_s(j, "dealerId", "dealer_id"),
        job_type=_s(j, "jobType", "job_type"),
        city=_s(j, "city"),
        region=_s(j, "region"),
        service_category_id=_s(j, "serviceCategoryId", "service_category_id"),
        service_sub_category_id=_s(j, "serviceSubCategoryId", "service_sub_category_id"),
    )
    if gross not in (None, ""):
        ctx.gross_amount = as_decimal(gross)
        if ctx.gross_amount is None:
            raise APIError("VALIDATION_ERROR", "grossAmount must be a finite number", 422)
    return ctx


def _row_resolved(r: ResolvedCommission) -> dict:
    out = {
        "ruleId": r.rule_id,
        "ruleSource": r.source,
        "commissionType": r.commission_type.value,
        "commissionValue": str(r.commission_value),
    }
    if r.commission_amount is not None:
        out["commissionAmount"] = money(r.commission_amount)
        out["netAmount"] = money(r.net_amount)
    return out


def _row_rule(r: CommissionRule) -> dict:
    scope = scope_fields(r.scope)
    return {
        "id": r.id,
        "commissionType": r.commission_type.value,
        "commissionValue": str(r.commission_value),
        "scopeKind": type(r.scope).__name__,
        "jobType": scope["job_type"],
        "city": scope["city"],
        "region": scope["region"],
        "dealerId": scope["dealer_id"],
        "serviceCategoryId": scope["service_category_id"],
        "serviceSubCategoryId": scope["service_sub_category_id"],
        "effectiveFrom": r.effective_from.isoformat() if r.effective_from else None,
        "effectiveTo": r.effective_to.isoformat() if r.effective_to else None,
        "isActive": r.is_active,
        "createdBy": r.created_by,
        "notes": r.notes,
        "createdAt": r.created_at.isoformat() if r.created_at else None,
    }


def _row_margin_rule(r: MinimumMarginRule) -> dict:
    return {
        "id": r.id,
        "minimumMarginPercent": str(r.minimum_margin_percent) if r.minimum_margin_percent is not None else None,
        "minimumMarginAmount": money(r.minimum_margin_amount),
        "requiresApproval": r.requires_approval,
        "autoReject": r.auto_reject,
        "applyToService": r.apply_to_service,
        "applyToProduct": r.apply_to_product,
        "isActive": r.is_active,
    }


def _row_margin(m: MarginCheck) -> dict:
    return {
        "meetsMinimum": m.meets_minimum,
        "minimumRequired": money(m.minimum_required),
        "actualMargin": money(m.actual_margin),
        "requiresApproval": m.requires_approval,
        "autoReject": m.auto_reject,
        "ruleId": m.rule_id,
    }


# ---------- routes ----------

@bp.post("/resolve")
@requires_perms("commission.resolve")
def resolve():
    """Resolve the commission rule for a transaction context; 404 when none applies."""
    resolved = core().resolver.resolve(context_from_json(body()))
    return ok(_row_resolved(resolved))


@bp.get("/rules")
@requires_perms("commission.rules.read")
def list_rules():
    active_only = (request.args.get("active") or "").lower() in ("1", "true", "yes")
    rows = core().resolver.list_rules(active_only=active_only)
    return ok([_row_rule(r) for r in rows], total=len(rows))


@bp.post("/rules")
@requires_perms("commission.rules.write")
def create_rule():
    j = body()
    effective_from = as_datetime(j.get("effectiveFrom"))
    effective_to = as_datetime(j.get("effectiveTo"))
    if j.get("effectiveFrom") and effective_from is None:
        raise APIError("VALIDATION_ERROR", "effectiveFrom must be an ISO datetime", 422)
    if j.get("effectiveTo") and effective_to is None:
        raise APIError("VALIDATION_ERROR", "effectiveTo must be an ISO datetime", 422)

    rule = core().resolver.create_rule(
        j.get("commissionType"),
        j.get("commissionValue"),
        created_by=_s(j, "createdBy") or _current_user(),
        notes=_s(j, "notes"),
        effective_from=effective_from,
        effective_to=effective_to,
        job_type=_s(j, "jobType", "job_type"),
        city=_s(j, "city"),
        region=_s(j, "region"),
        dealer_id=_s(j, "dealerId", "dealer_id"),
        service_category_id=_s(j, "serviceCategoryId", "service_category_id"),
        service_sub_category_id=_s(j, "serviceSubCategoryId", "service_sub_category_id"),
    )
    return ok(_row_rule(rule), 201)


@bp.post("/rules/<int:rule_id>/deactivate")
@requires_perms("commission.rules.write")
def deactivate_rule(rule_id: int):
    return ok(_row_rule(core().resolver.deactivate_rule(rule_id)))


@bp.post("/margin-rules")
@requires_perms("commission.rules.write")
def create_margin_rule():
    j = body()
    rule = core().resolver.create_margin_rule(
        minimum_margin_percent=j.get("minimumMarginPercent"),
        minimum_margin_amount=j.get("minimumMarginAmount"),
        requires_approval=bool(j.get("requiresApproval", False)),
        auto_reject=bool(j.get("autoReject", False)),
        apply_to_service=bool(j.get("applyToService", True)),
        apply_to_product=bool(j.get("applyToProduct", True)),
    )
    return ok(_row_margin_rule(rule), 201)


@bp.post("/margin-check")
@requires_perms("commission.resolve")
def margin_check():
    j = body()
    commission = as_decimal(j.get("commissionAmount"))
    gross = as_decimal(j.get("grossAmount", j.get("totalAmount")))
    if commission is None or gross is None:
        raise APIError("VALIDATION_ERROR", "commissionAmount and grossAmount are required numbers", 422)
    check = core().resolver.check_minimum_margin(
        commission, gross,
        is_service=bool(j.get("isService", True)),
        is_product=bool(j.get("isProduct", False)),
    )
    return ok(_row_margin(check))


def _current_user():
    uid = get_jwt_identity()
    return str(uid) if uid is not None else None
