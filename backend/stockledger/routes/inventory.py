# backend/stockledger/routes/inventory.py
"""
Inventory ledger routes.

The acting user comes from the X-User-Id header (see decorators.with_actor).

Time semantics:
- start/end query params are local business dates (YYYY-MM-DD), inclusive.
- occurred_at in bodies is ISO-8601 with Z/offsets; normalized to UTC-naive.
- Responses serialize datetimes as ISO-8601 'Z' strings.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..extensions import db
from ..decorators import with_actor
from ..services import ledger_service, production_service, recipe_service
from ..services.analytics_client import AnalyticsQueryError, AnalyticsUnavailableError, default_source
from ..services.ledger_service import InsufficientStockError, LedgerError
from ..time_utils import business_day_bounds, parse_iso_datetime
from ..validation import ValidationError, parse_date, parse_int, parse_quantity


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _offset_hours() -> int:
    return current_app.config.get("ANALYTICS_TIME_OFFSET_HOURS", 0)


def _date_window():
    start = parse_date(request.args.get("start"), "start", required=False)
    end = parse_date(request.args.get("end"), "end", required=False)
    if start is None and end is None:
        return None, None
    start = start or end
    end = end or start
    if start > end:
        raise ValidationError("start must be <= end")
    return business_day_bounds(start, end, _offset_hours())


@inventory_bp.post("/movements")
@with_actor
def post_movement_route():
    """
    Post a manual movement (receive, sale/waste, transfer, adjustment).

    Request body:
    {
        "product_id": int,
        "department_id": int,
        "transaction_type": str,
        "quantity": number,      // signed; sign must match the type
        "notes": str (optional),
        "occurred_at": str (optional)
    }
    """
    payload = request.get_json(silent=True) or {}
    try:
        occurred_raw = payload.get("occurred_at")
        try:
            occurred_at = parse_iso_datetime(occurred_raw) if occurred_raw else None
        except ValueError:
            raise ValidationError("occurred_at must be an ISO-8601 datetime")

        entry = ledger_service.post_manual_movement(
            parse_int(payload.get("product_id"), "product_id"),
            parse_int(payload.get("department_id"), "department_id"),
            str(payload.get("transaction_type") or "").strip(),
            parse_quantity(payload.get("quantity"), "quantity", nonzero=True),
            notes=payload.get("notes"),
            actor=g.actor_id,
            occurred_at=occurred_at,
        )
        return jsonify(entry.to_dict()), 201
    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except InsufficientStockError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except LedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to post movement")
        return jsonify({"error": "Failed to post movement"}), 500


@inventory_bp.post("/initial")
@with_actor
def initialize_balance_route():
    payload = request.get_json(silent=True) or {}
    try:
        entry = ledger_service.initialize_balance(
            parse_int(payload.get("product_id"), "product_id"),
            parse_int(payload.get("department_id"), "department_id"),
            parse_quantity(payload.get("quantity"), "quantity"),
            actor=g.actor_id,
        )
        return jsonify(entry.to_dict()), 201
    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to initialize balance")
        return jsonify({"error": "Failed to initialize balance"}), 500


@inventory_bp.get("/balance")
def balance_route():
    try:
        product_id = parse_int(request.args.get("product_id"), "product_id")
        department_id = parse_int(request.args.get("department_id"), "department_id")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    quantity = ledger_service.get_balance(product_id, department_id)
    return jsonify({
        "product_id": product_id,
        "department_id": department_id,
        "quantity": float(quantity),
        "last_transaction_id": ledger_service.last_entry_id(product_id, department_id),
    })


@inventory_bp.get("/balances")
def balances_route():
    try:
        rows = ledger_service.list_balances(
            department_id=parse_int(request.args.get("department_id"), "department_id", required=False),
            branch_id=parse_int(request.args.get("branch_id"), "branch_id", required=False),
            product_id=parse_int(request.args.get("product_id"), "product_id", required=False),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": [r.to_dict() for r in rows]})


@inventory_bp.get("/stock-card")
def stock_card_route():
    """Movement history of one product in one department, optionally for a date window."""
    try:
        product_id = parse_int(request.args.get("product_id"), "product_id")
        department_id = parse_int(request.args.get("department_id"), "department_id")
        lower, upper = _date_window()
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    card = ledger_service.get_stock_card(product_id, department_id, start=lower, end=upper)
    return jsonify(card)


@inventory_bp.get("/movements")
def movements_route():
    try:
        lower, upper = _date_window()
        rows, total = ledger_service.list_movements(
            product_id=parse_int(request.args.get("product_id"), "product_id", required=False),
            department_id=parse_int(request.args.get("department_id"), "department_id", required=False),
            transaction_type=request.args.get("transaction_type"),
            reference_type=request.args.get("reference_type"),
            reference_id=request.args.get("reference_id"),
            start=lower,
            end=upper,
            limit=request.args.get("limit", 100, type=int),
            offset=request.args.get("offset", 0, type=int),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": [r.to_dict() for r in rows], "total": total})


@inventory_bp.get("/verify")
def verify_route():
    try:
        report = ledger_service.verify_ledger(
            product_id=parse_int(request.args.get("product_id"), "product_id", required=False),
            department_id=parse_int(request.args.get("department_id"), "department_id", required=False),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(report.to_dict())


@inventory_bp.post("/production")
@with_actor
def production_route():
    """
    Production transform.

    Request body:
    {
        "department_id": int,
        "output_product_id": int,
        "output_quantity": number,
        "ingredients": [{"product_id": int, "quantity": number}, ...],
        "notes": str (optional)
    }
    """
    payload = request.get_json(silent=True) or {}
    try:
        result = production_service.transform(
            parse_int(payload.get("department_id"), "department_id"),
            parse_int(payload.get("output_product_id"), "output_product_id"),
            payload.get("output_quantity"),
            payload.get("ingredients") or [],
            notes=payload.get("notes"),
            actor=g.actor_id,
        )
        return jsonify(result.to_dict()), 201
    except (ValidationError, production_service.ProductionError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except InsufficientStockError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Production transform failed")
        return jsonify({"error": "Production transform failed"}), 500


@inventory_bp.get("/production")
def production_history_route():
    try:
        items = production_service.list_transforms(
            department_id=parse_int(request.args.get("department_id"), "department_id", required=False),
            limit=request.args.get("limit", 50, type=int),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": items})


@inventory_bp.get("/usage-report")
def usage_report_route():
    """Expected (recipe) vs actual (ledger) ingredient usage for a date window."""
    try:
        start = parse_date(request.args.get("start"), "start")
        end = parse_date(request.args.get("end"), "end", required=False) or start
        branch_id = parse_int(request.args.get("branch_id"), "branch_id", required=False)
        report = recipe_service.usage_report(
            start,
            end,
            branch_id,
            source=current_app.extensions.get("analytics_source") or default_source(),
            offset_hours=_offset_hours(),
        )
        return jsonify(report)
    except (ValidationError, recipe_service.RecipeError) as e:
        return jsonify({"error": str(e)}), 400
    except AnalyticsUnavailableError as e:
        return jsonify({"error": str(e), "retryable": True}), 503
    except AnalyticsQueryError as e:
        current_app.logger.error("Usage report query failed: %s", e)
        return jsonify({"error": str(e)}), 502


@inventory_bp.post("/sale-movements/delete")
@with_actor
def delete_sale_movements_route():
    """
    DANGEROUS: delete `sale` movements in a business-date range and reverse balances.

    Request body:
    {
        "start_date": "YYYY-MM-DD",
        "end_date": "YYYY-MM-DD",
        "department_id": int (optional),
        "confirm": true
    }
    """
    payload = request.get_json(silent=True) or {}
    try:
        if payload.get("confirm") is not True:
            raise ValidationError("confirm must be true")
        summary = ledger_service.delete_sale_movements(
            parse_date(payload.get("start_date"), "start_date"),
            parse_date(payload.get("end_date"), "end_date"),
            department_id=parse_int(payload.get("department_id"), "department_id", required=False),
            actor=g.actor_id,
        )
        return jsonify(summary)
    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to delete sale movements")
        return jsonify({"error": "Failed to delete sale movements"}), 500
