# Overview: Request decorators and error mapping for API routes.

from functools import wraps

from flask import request, jsonify, g, current_app

from .extensions import db
from .models import User
from .services.errors import (
    NotFoundError,
    InvalidStateError,
    UnauthorizedTransitionError,
    LedgerConsistencyError,
)
from .validation import ValidationError

ACTOR_HEADER = "X-User-Id"


def require_actor(f):
    """
    Resolve the acting user and store it on g.current_user.

    Authentication happens at the gateway; it forwards the authenticated
    user id in the X-User-Id header.

    Returns 401 if the header is missing or malformed or names an
    unknown user, and 403 if the user is deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw:
            return jsonify({"error": "Acting user required"}), 401
        if not raw.isdigit():
            return jsonify({"error": f"Invalid {ACTOR_HEADER} header"}), 401

        user = db.session.get(User, int(raw))
        if not user:
            return jsonify({"error": "Unknown user"}), 401
        if not user.is_active:
            return jsonify({"error": "User account is inactive"}), 403

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function


def json_error(exc: Exception):
    """Map a service exception to a JSON error response; the caller has rolled back."""
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, UnauthorizedTransitionError):
        return jsonify({"error": str(exc)}), 403
    if isinstance(exc, NotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, LedgerConsistencyError):
        return jsonify({"error": str(exc), "stock_record_id": exc.stock_record_id}), 409
    if isinstance(exc, InvalidStateError):
        return jsonify({"error": str(exc)}), 409
    current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500
