# backend/matreq/routes/stock.py
"""
Stock ledger API routes.

Quantities are decimal strings in responses. A rejected movement (not
enough stock) answers 409 with the on-hand and requested quantities.
"""
from flask import Blueprint, request, jsonify, g

from ..extensions import db
from ..decorators import require_actor, json_error
from ..services import stock_ledger_service, threshold_service
from ..services.audit_service import list_audit_events
from ..validation import require_fields, optional_int, to_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _movement_response(result, status_code: int):
    if not result.applied:
        return jsonify({"error": "Insufficient stock", "rejection": result.to_dict()}), 409
    return jsonify({
        "movement": result.movement.to_dict(),
        "stock": stock_ledger_service.get_stock_record(result.stock_record_id).to_dict(),
    }), status_code


@stock_bp.get("")
@require_actor
def list_stock():
    try:
        low_stock = request.args.get("low_stock")
        rows = stock_ledger_service.list_stock_records(
            store_id=optional_int(request.args.get("store_id"), "store_id"),
            material_id=optional_int(request.args.get("material_id"), "material_id"),
            low_stock=None if low_stock is None else low_stock.lower() in {"1", "true", "yes"},
        )
        return jsonify({"items": [s.to_dict() for s in rows], "count": len(rows)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.post("")
@require_actor
def create_stock():
    """
    Create the stock record for a (material, store) pair.

    Request body:
    {
        "material_id": int,
        "store_id": int,
        "reorder_level": number (optional),
        "low_stock_threshold": number (optional),
        "opening_quantity": number (optional)
    }
    """
    data = request.get_json(silent=True)

    try:
        require_fields(data, "material_id", "store_id")
        stock = stock_ledger_service.create_stock_record(
            to_int(data["material_id"], "material_id"),
            to_int(data["store_id"], "store_id"),
            g.current_user.id,
            reorder_level=data.get("reorder_level"),
            low_stock_threshold=data.get("low_stock_threshold"),
            opening_quantity=data.get("opening_quantity"),
        )
        return jsonify(stock.to_dict()), 201
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.get("/<int:stock_id>")
@require_actor
def get_stock(stock_id: int):
    try:
        return jsonify(stock_ledger_service.get_stock_record(stock_id).to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.put("/<int:stock_id>/thresholds")
@require_actor
def set_thresholds(stock_id: int):
    data = request.get_json(silent=True) or {}

    try:
        stock = stock_ledger_service.set_thresholds(
            stock_id,
            g.current_user.id,
            reorder_level=data.get("reorder_level"),
            low_stock_threshold=data.get("low_stock_threshold"),
        )
        return jsonify(stock.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.get("/<int:stock_id>/movements")
@require_actor
def list_movements(stock_id: int):
    try:
        limit = optional_int(request.args.get("limit"), "limit") or 100
        rows = stock_ledger_service.list_movements(stock_id, limit=min(max(limit, 1), 1000))
        return jsonify({"items": [m.to_dict() for m in rows], "count": len(rows)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.get("/<int:stock_id>/verify")
@require_actor
def verify_stock(stock_id: int):
    try:
        return jsonify(stock_ledger_service.verify_chain(stock_id).to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.post("/<int:stock_id>/release")
@require_actor
def release_stock(stock_id: int):
    """Unfreeze a stock record once its movement chain verifies clean."""
    data = request.get_json(silent=True) or {}

    try:
        stock = stock_ledger_service.release_freeze(stock_id, g.current_user.id, data.get("note"))
        return jsonify(stock.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.get("/<int:stock_id>/audit")
@require_actor
def stock_audit(stock_id: int):
    try:
        events = list_audit_events("stock_record", stock_id)
        return jsonify({"items": [e.to_dict() for e in events], "count": len(events)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.post("/receipts")
@require_actor
def receive_goods():
    """
    Book a goods receipt.

    Request body:
    {
        "material_id": int,
        "store_id": int,
        "quantity": number,
        "source_id": str (optional, e.g. GRN number),
        "note": str (optional)
    }
    """
    data = request.get_json(silent=True)

    try:
        require_fields(data, "material_id", "store_id", "quantity")
        result = stock_ledger_service.receive_goods(
            to_int(data["material_id"], "material_id"),
            to_int(data["store_id"], "store_id"),
            data["quantity"],
            g.current_user.id,
            source_id=data.get("source_id"),
            note=data.get("note"),
        )
        return _movement_response(result, 201)
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.post("/adjustments")
@require_actor
def adjust_stock():
    """
    Book a signed manual adjustment.

    Request body:
    {
        "material_id": int,
        "store_id": int,
        "quantity_delta": number (non-zero, signed),
        "note": str (optional)
    }

    Returns:
        201: Adjustment applied
        409: Adjustment would take on-hand below zero (nothing written)
    """
    data = request.get_json(silent=True)

    try:
        require_fields(data, "material_id", "store_id", "quantity_delta")
        result = stock_ledger_service.adjust_stock(
            to_int(data["material_id"], "material_id"),
            to_int(data["store_id"], "store_id"),
            data["quantity_delta"],
            g.current_user.id,
            note=data.get("note"),
        )
        return _movement_response(result, 201)
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.get("/alerts/low-stock")
@require_actor
def low_stock_alerts():
    try:
        rows = threshold_service.list_low_stock(optional_int(request.args.get("store_id"), "store_id"))
        return jsonify({"items": [s.to_dict() for s in rows], "count": len(rows)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@stock_bp.get("/procurement-recommendations")
@require_actor
def procurement_recommendations():
    try:
        recs = threshold_service.procurement_recommendations(
            optional_int(request.args.get("store_id"), "store_id")
        )
        return jsonify({"items": [r.to_dict() for r in recs], "count": len(recs)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)
