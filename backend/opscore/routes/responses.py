# Overview: JSON response helper that attaches the user-facing notifications collected during the request.

from flask import jsonify, request

from ..services import notification_service
from ..validation import ValidationError


def api_response(body: dict, status: int = 200):
    body["notifications"] = notification_service.drain()
    return jsonify(body), status


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def client_context() -> dict:
    """ip_address/user_agent for audit entries."""
    forwarded = request.headers.get("X-Forwarded-For")
    return {
        "ip_address": forwarded.split(",")[0].strip() if forwarded else request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }
