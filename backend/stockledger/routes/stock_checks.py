# backend/stockledger/routes/stock_checks.py
"""
Stock check (physical count) routes.

Flow:
1. POST /api/stock-checks           record counts for a department and date
2. GET  /api/stock-checks/variance  preview counted vs system at count time
3. POST /api/stock-checks/apply     post adjustments for selected products
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..extensions import db
from ..decorators import with_actor
from ..services.count_service import CountError, apply_adjustment, list_stock_checks, preview_variance, record_counts
from ..validation import ConflictError, ValidationError, parse_date, parse_int


stock_checks_bp = Blueprint("stock_checks", __name__, url_prefix="/api/stock-checks")


@stock_checks_bp.post("")
@with_actor
def record_counts_route():
    """
    Request body:
    {
        "department_id": int,
        "check_date": "YYYY-MM-DD",
        "items": [{"product_id": int, "counted_quantity": number}, ...]
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        checks = record_counts(
            parse_int(data.get("department_id"), "department_id"),
            parse_date(data.get("check_date"), "check_date"),
            data.get("items") or [],
            actor=g.actor_id,
        )
        return jsonify({"items": [c.to_dict() for c in checks]}), 201
    except (ValidationError, CountError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record stock checks")
        return jsonify({"error": "Failed to record stock checks"}), 500


@stock_checks_bp.get("")
def list_counts_route():
    try:
        department_id = parse_int(request.args.get("department_id"), "department_id")
        check_date = parse_date(request.args.get("check_date"), "check_date")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    checks = list_stock_checks(department_id, check_date)
    return jsonify({"items": [c.to_dict() for c in checks]})


@stock_checks_bp.get("/variance")
def variance_route():
    try:
        department_id = parse_int(request.args.get("department_id"), "department_id")
        check_date = parse_date(request.args.get("check_date"), "check_date")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": preview_variance(check_date, department_id)})


@stock_checks_bp.post("/apply")
@with_actor
def apply_route():
    """
    Request body:
    {
        "department_id": int,
        "check_date": "YYYY-MM-DD",
        "product_ids": [int, ...]
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        result = apply_adjustment(
            parse_date(data.get("check_date"), "check_date"),
            parse_int(data.get("department_id"), "department_id"),
            data.get("product_ids") or [],
            actor=g.actor_id,
        )
        return jsonify(result.to_dict())
    except (ValidationError, CountError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to apply stock check adjustments")
        return jsonify({"error": "Failed to apply stock check adjustments"}), 500
