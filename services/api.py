"""JSON envelope helpers shared by the ``/api`` blueprints."""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Optional

from flask import jsonify, request

from extensions import db
from services.errors import DesklyError

logger = logging.getLogger(__name__)


def success_response(data: Any, status: int = 200, meta: Optional[dict] = None):
    return jsonify({"data": data, "error": None, "meta": meta}), status


def error_response(message: str, status: int, meta: Optional[dict] = None):
    return jsonify({"data": None, "error": message, "meta": meta}), status


def handle_api_errors(f):
    """Convert service errors into the JSON envelope.

    Any pending session changes are rolled back before responding.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except DesklyError as exc:
            db.session.rollback()
            if exc.status_code >= 500:
                logger.error("%s failed: %s", f.__name__, exc.message)
            return error_response(exc.message, exc.status_code, exc.meta)
        except Exception:
            db.session.rollback()
            logger.exception("Unhandled error in %s", f.__name__)
            return error_response("Internal server error", 500)

    return decorated


def json_body() -> dict:
    """Request JSON body as a dict (``{}`` for anything else)."""
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}
