# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-User-Id"


def with_actor(f):
    """
    Establish the acting user for the request.

    Authentication is the surrounding application's job; it forwards the
    authenticated user id in the X-User-Id header. Sets:
    - g.actor_id: int, or None when the header is absent (system calls)

    Returns 400 if the header is present but not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw:
            g.actor_id = None
        elif raw.isdigit() and int(raw) > 0:
            g.actor_id = int(raw)
        else:
            return jsonify({"error": f"Invalid {ACTOR_HEADER} header"}), 400
        return f(*args, **kwargs)

    return decorated_function
