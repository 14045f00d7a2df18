# backend/stockledger/routes/sales_sync.py
from flask import Blueprint, current_app, g, jsonify, request

from ..extensions import db
from ..decorators import with_actor
from ..services.analytics_client import AnalyticsQueryError, AnalyticsUnavailableError
from ..services.sales_sync_service import SalesSyncError, list_sync_logs, sync_sales
from ..validation import ValidationError, parse_date, parse_int


sales_sync_bp = Blueprint("sales_sync", __name__, url_prefix="/api/sales-sync")


@sales_sync_bp.post("")
@with_actor
def sync_route():
    """
    Deduct recipe usage of POS sales.

    Request body:
    {
        "start_date": "YYYY-MM-DD",
        "end_date": "YYYY-MM-DD" (optional, defaults to start_date),
        "branch_id": int (optional),
        "dry_run": bool (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        start = parse_date(data.get("start_date"), "start_date")
        end = parse_date(data.get("end_date"), "end_date", required=False) or start
        result = sync_sales(
            start,
            end,
            parse_int(data.get("branch_id"), "branch_id", required=False),
            dry_run=bool(data.get("dry_run", False)),
            actor=g.actor_id,
            source=current_app.extensions.get("analytics_source"),
        )
        return jsonify(result.to_dict())
    except (ValidationError, SalesSyncError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except AnalyticsUnavailableError as e:
        return jsonify({"error": str(e), "retryable": True, "attempts": e.attempts}), 503
    except AnalyticsQueryError as e:
        return jsonify({"error": str(e)}), 502
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Sales sync failed")
        return jsonify({"error": "Sales sync failed"}), 500


@sales_sync_bp.get("/logs")
def logs_route():
    logs = list_sync_logs(request.args.get("limit", 50, type=int))
    return jsonify({"items": [log.to_dict() for log in logs]})
