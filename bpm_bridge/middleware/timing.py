"""
Request timing middleware.

Every response carries ``X-Request-ID`` (echoed from the caller when sent)
and ``X-Request-Duration-Ms``.  Requests are logged with the form they
touch, so a slow withdraw can be matched with the BPM call behind it.

A request counts as slow past ``SLOW_REQUEST_MS`` (config), default half
of the BPM timeout.
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
DURATION_HEADER = "X-Request-Duration-Ms"

# Probes are polled constantly; timing them is noise.
_QUIET_PATHS = frozenset({"/api/v1/health", "/api/v1/health/ready", "/api/v1/health/live"})

# Body keys that name the form a lifecycle / sync call is about.
_FORM_ID_KEYS = ("formId", "processSerialNo")


def _slow_threshold_ms() -> float:
    configured = current_app.config.get("SLOW_REQUEST_MS")
    if configured:
        return float(configured)
    return current_app.config.get("BPM_TIMEOUT", 30) * 1000 / 2


def _extract_form_id() -> str | None:
    view_args = request.view_args or {}
    if view_args.get("form_id"):
        return view_args["form_id"]
    if request.method != "POST":
        return None
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return None
    for key in _FORM_ID_KEYS:
        if payload.get(key):
            return str(payload[key])
    return None


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_timer(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers[DURATION_HEADER] = f"{elapsed_ms:.1f}"
        response.headers[REQUEST_ID_HEADER] = g.request_id
        if request.path in _QUIET_PATHS:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
            "remote_addr": request.remote_addr,
            "form_id": _extract_form_id(),
        }
        if elapsed_ms > _slow_threshold_ms():
            level, label = logging.WARNING, "Slow request"
        elif response.status_code >= 500:
            level, label = logging.ERROR, "Failed request"
        else:
            level, label = logging.DEBUG, "Request"
        logger.log(level, "%s: %s %s -> %d (%.0fms)", label,
                   request.method, request.path, response.status_code, elapsed_ms, extra=extra)
        return response
