# Overview: Request decorators for the sync API routes.

import hmac
from functools import wraps
from flask import current_app, jsonify, request


def require_service_token(f):
    """
    Require the shared service bearer token (SYNC_SERVICE_TOKEN).

    Returns 503 while no token is configured, so a fresh deployment never
    exposes the trigger endpoints unauthenticated, and 401 when the header
    is missing or wrong.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("SYNC_SERVICE_TOKEN")
        if not expected:
            return jsonify({"error": "Sync service token not configured"}), 503

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        if not hmac.compare_digest(token.encode(), expected.encode()):
            return jsonify({"error": "Invalid token"}), 401

        return f(*args, **kwargs)

    return decorated_function
