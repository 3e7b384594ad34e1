# backend/matreq/routes/requests.py
"""
Material request API routes.

The acting user comes from the X-User-Id header (see require_actor).
Role checks happen in the request service; these routes only translate
HTTP to service calls and service errors to status codes.
"""
from flask import Blueprint, request, jsonify, g

from ..extensions import db
from ..decorators import require_actor, json_error
from ..services import request_service
from ..services.audit_service import list_audit_events
from ..validation import require_fields, optional_int


requests_bp = Blueprint("requests", __name__, url_prefix="/api/requests")


@requests_bp.post("")
@require_actor
def create_request():
    """
    Create a DRAFT request.

    Request body:
    {
        "site_id": int,
        "notes": str (optional),
        "items": [{"material_id": int, "unit_id": int, "qty_requested": number}]
    }

    Returns:
        201: Request created
        400: Invalid payload
        403: Actor may not create requests
        404: Site, material or unit not found
    """
    data = request.get_json(silent=True)

    try:
        require_fields(data, "site_id", "items")
        req = request_service.create_request(
            site_id=data["site_id"],
            requester_id=g.current_user.id,
            items=data["items"],
            notes=data.get("notes"),
        )
        return jsonify(req.to_dict()), 201
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.get("")
@require_actor
def list_requests():
    try:
        rows = request_service.list_requests(
            status=request.args.get("status"),
            site_id=optional_int(request.args.get("site_id"), "site_id"),
            requested_by=optional_int(request.args.get("requested_by"), "requested_by"),
        )
        return jsonify({"items": [r.to_dict(include_items=False) for r in rows], "count": len(rows)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.get("/<int:request_id>")
@require_actor
def get_request(request_id: int):
    try:
        return jsonify(request_service.get_request(request_id).to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.patch("/<int:request_id>")
@require_actor
def update_request(request_id: int):
    """
    Edit a DRAFT request.

    Request body (all optional):
    {
        "notes": str,
        "site_id": int,
        "items": [...]   # replaces the whole item list
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        kwargs = {}
        if "notes" in data:
            kwargs["notes"] = data["notes"]
        req = request_service.update_request(
            request_id,
            g.current_user.id,
            site_id=data.get("site_id"),
            items=data.get("items"),
            **kwargs,
        )
        return jsonify(req.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.delete("/<int:request_id>")
@require_actor
def delete_request(request_id: int):
    try:
        request_service.delete_request(request_id, g.current_user.id)
        return "", 204
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.post("/<int:request_id>/items")
@require_actor
def add_request_item(request_id: int):
    data = request.get_json(silent=True)

    try:
        require_fields(data, "material_id", "unit_id", "qty_requested")
        item = request_service.add_request_item(
            request_id,
            g.current_user.id,
            data["material_id"],
            data["unit_id"],
            data["qty_requested"],
        )
        return jsonify(item.to_dict()), 201
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.delete("/<int:request_id>/items/<int:item_id>")
@require_actor
def remove_request_item(request_id: int, item_id: int):
    try:
        req = request_service.remove_request_item(request_id, item_id, g.current_user.id)
        return jsonify(req.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.post("/<int:request_id>/submit")
@require_actor
def submit_request(request_id: int):
    """
    Submit a DRAFT request into the approval chain.

    Returns:
        200: Request in its first review level (or APPROVED)
        403: Actor is not the requester
        409: Request not in DRAFT or has no items
    """
    try:
        req = request_service.submit_request(request_id, g.current_user.id)
        return jsonify(req.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.post("/<int:request_id>/approvals")
@require_actor
def record_approval(request_id: int):
    """
    Record a reviewer decision.

    Request body:
    {
        "level": int,
        "action": "APPROVED" | "REJECTED",
        "approved_quantities": {"<item_id>": number} (optional),
        "comment": str (optional),
        "reviewer_role": str (optional)
    }

    Returns:
        200: Decision recorded
        400: Invalid payload or adjustment
        403: Reviewer lacks a role for the level
        409: Request is not waiting on this level
    """
    data = request.get_json(silent=True)

    try:
        require_fields(data, "level", "action")
        req = request_service.record_approval(
            request_id,
            data["level"],
            g.current_user.id,
            data["action"],
            approved_quantities=data.get("approved_quantities"),
            comment=data.get("comment"),
            reviewer_role=data.get("reviewer_role"),
        )
        return jsonify(req.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.post("/<int:request_id>/issue")
@require_actor
def issue_request(request_id: int):
    """
    Issue remaining approved quantities from a store.

    Request body:
    {
        "store_id": int
    }

    Returns:
        200: Issue outcome (issued and skipped lines)
        403: Actor is not an issuer
        409: Request not issuable, or a stock record is frozen
    """
    data = request.get_json(silent=True)

    try:
        require_fields(data, "store_id")
        outcome = request_service.issue_request(request_id, data["store_id"], g.current_user.id)
        return jsonify(outcome.to_dict())
    except Exception as e:
        db.session.rollback()
        return json_error(e)


@requests_bp.get("/<int:request_id>/audit")
@require_actor
def request_audit(request_id: int):
    try:
        events = list_audit_events("request", request_id)
        return jsonify({"items": [e.to_dict() for e in events], "count": len(events)})
    except Exception as e:
        db.session.rollback()
        return json_error(e)
