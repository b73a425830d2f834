# Overview: Request decorators for API routes.

from functools import wraps
from flask import current_app, g, request


def with_actor(f):
    """
    Record who is calling.

    Authentication happens upstream; the gateway in front of this service
    forwards the caller id in ACTOR_HEADER (default X-Actor-Id). Sets
    g.actor_id (None when the header is absent, e.g. anonymous checkout).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        header = current_app.config.get("ACTOR_HEADER", "X-Actor-Id")
        actor_id = (request.headers.get(header) or "").strip()
        g.actor_id = actor_id[:64] or None
        return f(*args, **kwargs)

    return decorated_function
