"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in bpm_bridge/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from bpm_bridge.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Every forms route may reach BPM; the read-only BPM proxy is looser.
FORMS_LIMIT = "60/minute"
BPM_READ_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Forms endpoints:  60/minute  (sync, submit, withdraw, cancel)
        - BPM proxy reads:  120/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("forms")
    if bp:
        limiter.limit(FORMS_LIMIT)(bp)

    bp = app.blueprints.get("bpm")
    if bp:
        limiter.limit(BPM_READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: forms=%s, bpm=%s", FORMS_LIMIT, BPM_READ_LIMIT)
