"""Shared request helpers for the API blueprints.

get_actor:        caller identity from body ``actor_id`` or ``X-User-Id``
get_client_ip:    X-Forwarded-For aware client address
get_user_agent:   truncated User-Agent header
paginate_params:  limit/offset from the query string
"""
import logging

from flask import g, request

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.auth import User

logger = logging.getLogger(__name__)


def get_actor(data: dict | None = None) -> User:
    """Load the calling user.

    ``actor_id`` in the JSON body wins over the ``X-User-Id`` header.
    Authentication itself happens upstream; this only identifies the caller.

    Raises:
        ValidationError: no usable actor id.
        NotFoundError: id does not match a user.
    """
    raw = (data or {}).get("actor_id") or request.headers.get("X-User-Id")
    if raw in (None, ""):
        raise ValidationError("actor_id is required (body or X-User-Id header)",
                              details={"actor_id": "required"})
    try:
        actor_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("actor_id must be an integer", details={"actor_id": str(raw)})

    actor = db.session.get(User, actor_id)
    if not actor:
        raise NotFoundError(resource="User", resource_id=actor_id)
    g.actor_id = actor.id
    return actor


def get_client_ip() -> str | None:
    """Return real client IP, honouring X-Forwarded-For from load balancers.

    First entry in the comma-delimited list is the originating client;
    falls back to remote_addr when the header is absent.
    """
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr


def get_user_agent() -> str | None:
    ua = request.headers.get("User-Agent")
    return ua[:300] if ua else None


def paginate_params(default_limit=100, max_limit=500) -> tuple[int, int]:
    """Read limit/offset from the query string.

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset
