# Overview: Request decorators that resolve the calling actor and enforce roles.

from functools import wraps

from flask import current_app, g, jsonify, request

from .authorization import has_role, load_actor
from .validation import ValidationError, parse_id


def _is_authenticated() -> bool:
    return getattr(g, "current_user", None) is not None


def require_actor(f):
    """
    Resolve the caller forwarded by the upstream identity layer.

    The upstream gateway authenticates the user and forwards its id in the
    ACTOR_HEADER header. Sets g.current_user (user dict).

    Returns 401 if the header is missing, malformed, unknown or inactive.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        header = current_app.config.get("ACTOR_HEADER", "X-Actor-Id")
        raw = request.headers.get(header)
        if not raw:
            return jsonify({"error": "Authentication required"}), 401

        try:
            user_id = parse_id(raw, header)
        except ValidationError:
            return jsonify({"error": "Invalid actor identity"}), 401

        actor = load_actor(user_id)
        if not actor or not actor.get("is_active"):
            return jsonify({"error": "Unknown or inactive user"}), 401

        g.current_user = actor
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of ``roles``. Must be applied after @require_actor.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if not has_role(g.current_user, roles):
                current_app.logger.warning(
                    "Permission denied: user=%s role=%s path=%s required=%s",
                    g.current_user.get("id"), g.current_user.get("role"), request.path, ",".join(roles),
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function

    return decorator
