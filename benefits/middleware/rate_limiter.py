"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in benefits/__init__.py with no default
limits; this module applies the limits per blueprint.

Usage:
    from benefits.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Benefit request endpoints: RATELIMIT_BENEFIT_REQUESTS (default 120/minute)
        - Health check:              exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    limit = app.config.get("RATELIMIT_BENEFIT_REQUESTS", "120 per minute")
    bp = app.blueprints.get("benefit_request_bp")
    if bp:
        limiter.limit(limit)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: benefit requests %s", limit)
