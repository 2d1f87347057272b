"""
Per-request id and duration.

Each request gets an id (the caller's ``X-Request-ID`` when supplied), which
the logging filter stamps onto every record emitted while it runs. The id and
the elapsed milliseconds go back on the response; slow calls and 5xx answers
are logged, probe traffic is not.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_PROBE_PATHS = frozenset({"/api/v1/health", "/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000
# Matching, expiry and import runs walk whole batches.
SLOW_BATCH_THRESHOLD_MS = 10_000
_BATCH_SUFFIXES = ("/projections/match", "/projections/expire-check", "/projections/import")


def _slow_threshold(path: str) -> float:
    return SLOW_BATCH_THRESHOLD_MS if path.endswith(_BATCH_SUFFIXES) else SLOW_THRESHOLD_MS


def _log_level_for(status: int, duration_ms: float, path: str) -> tuple[int, str]:
    if duration_ms > _slow_threshold(path):
        return logging.WARNING, "Slow request"
    if status >= 500:
        return logging.ERROR, "Server error"
    return logging.DEBUG, "Request"


def init_request_timing(app: Flask):
    @app.before_request
    def _begin():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        started = g.get("request_start")
        if started is None:
            return response

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"
        if request.path in _PROBE_PATHS:
            return response

        level, label = _log_level_for(response.status_code, elapsed, request.path)
        logger.log(
            level, "%s: %s %s %d (%.0fms)", label,
            request.method, request.path, response.status_code, elapsed,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed,
                "remote_addr": request.remote_addr,
                "request_id": g.get("request_id", ""),
            },
        )
        return response
