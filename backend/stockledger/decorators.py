# Overview: Request decorators that read the caller identity set by the access-control layer.

from functools import wraps
from flask import request, jsonify, g


ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"

ROLES = ("staff", "manager", "admin")


def require_actor(f):
    """
    Require an authenticated actor.

    Authentication happens upstream; by the time a request reaches us the
    gateway has put the user id and role in headers. Sets:
    - g.actor_id: int user id
    - g.actor_role: one of ROLES

    Returns 401 when the id is missing or not an integer, 403 for an unknown
    role.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_id = request.headers.get(ACTOR_ID_HEADER, "").strip()
        if not raw_id:
            return jsonify({"error": "Authentication required"}), 401
        try:
            actor_id = int(raw_id)
        except ValueError:
            return jsonify({"error": "Invalid actor id"}), 401

        role = request.headers.get(ACTOR_ROLE_HEADER, "staff").strip().lower()
        if role not in ROLES:
            return jsonify({"error": "Unknown role", "role": role}), 403

        g.actor_id = actor_id
        g.actor_role = role
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require the actor to hold one of the given roles. Use after @require_actor."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "actor_role"):
                return jsonify({"error": "Authentication required"}), 401
            if g.actor_role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                    "message": f"Requires any of: {', '.join(roles)}",
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator
