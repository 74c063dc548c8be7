"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies limits per route category, keyed by the calling user
when the request names one and by remote IP otherwise.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WORKFLOW_LIMIT = "60/minute"
ADMIN_LIMIT = "30/minute"
READ_LIMIT = "200/minute"


def actor_rate_limit_key():
    """Rate limit key: X-User-Id if present, else remote IP."""
    actor = flask_request.headers.get("X-User-Id")
    if actor:
        return f"user:{actor}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Invoice workflow:   60/minute
        - Hierarchy admin:    30/minute
        - Notifications:      200/minute
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("invoice")
    if bp:
        limiter.limit(WORKFLOW_LIMIT, key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("hierarchy")
    if bp:
        limiter.limit(ADMIN_LIMIT, key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("notification")
    if bp:
        limiter.limit(READ_LIMIT, key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — workflow: %s, admin: %s, notifications: %s",
        WORKFLOW_LIMIT, ADMIN_LIMIT, READ_LIMIT,
    )
