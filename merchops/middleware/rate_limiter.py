"""
Per-IP request limits for the projection API.

Read traffic gets one blueprint-wide budget. Batch runs and manual overrides
carry tighter shared limits on the routes themselves (``batch_limit`` and
``write_limit`` in the projection blueprints). Probes are never limited, and
nothing is limited under TESTING.
"""

import logging

logger = logging.getLogger(__name__)

# Matching runs, expiry scans and imports walk whole tables.
BATCH_LIMIT = "10/minute"
WRITE_LIMIT = "60/minute"
# Dashboards poll the report endpoints.
READ_LIMIT = "200/minute"

PROJECTION_BLUEPRINTS = ("projection", "expired_projection")


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        return

    for name in PROJECTION_BLUEPRINTS:
        if name in app.blueprints:
            limiter.limit(READ_LIMIT)(app.blueprints[name])
    if "health_bp" in app.blueprints:
        limiter.exempt(app.blueprints["health_bp"])

    logger.info("Rate limits: batch=%s write=%s read=%s", BATCH_LIMIT, WRITE_LIMIT, READ_LIMIT)
