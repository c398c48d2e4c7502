# settlement_api/common/http.py
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from flask import jsonify, request


def ok(data=None, status=200, **meta):
    payload = {"success": True, "data": data}
    if meta:
        payload["meta"] = meta
    return jsonify(payload), status


def fail(message="Bad Request", status=400, code=None, detail=None, errors=None):
    err = {"message": message}
    if code: err["code"] = code
    if detail: err["detail"] = detail
    if errors: err["errors"] = errors
    return jsonify({"success": False, "error": err}), status


# ---------- request parsing helpers ----------

def body() -> dict:
    return request.get_json(silent=True) or {}


def page_size():
    try:
        page = max(int(request.args.get("page", 1)), 1)
        size = min(max(int(request.args.get("size", 20)), 1), 200)
    except Exception:
        page, size = 1, 20
    return page, size


def as_date(s) -> Optional[date]:
    if not s:
        return None
    if isinstance(s, date):
        return s
    try:
        return date.fromisoformat(str(s))
    except ValueError:
        return None


def as_datetime(s) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(str(s))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        # columns hold naive UTC
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def as_decimal(x) -> Optional[Decimal]:
    if x is None or x == "" or isinstance(x, bool):
        return None
    try:
        value = Decimal(str(x))
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def money(x) -> Optional[str]:
    """Decimal → '123.45' for JSON; None passes through."""
    if x is None:
        return None
    return str(Decimal(x).quantize(Decimal("0.01")))
