"""Standardised API responses.

Client-facing operations answer with a small envelope carrying a coarse
numeric code that the mobile client switches on:

    {"code": "200", "msg": "Request succeeded", "data": {...}}

Usage
-----
    from bpm_bridge.utils.errors import api_error, api_response, E, R

    return api_response(R.OK, "Request succeeded", data={"formId": "PS-100"})
    return api_error(E.VALIDATION_REQUIRED, "formId is required")
"""

from __future__ import annotations

from flask import jsonify


# ── Envelope codes ────────────────────────────────────────────────────
class R:
    """Envelope codes.  The same number is used as the HTTP status.

    • OK       – the intent was achieved
    • REJECTED – request understood but a business rule / remote decision said no
    • FAILURE  – timeout, unreachable BPM, or unexpected error
    """

    OK = "200"
    REJECTED = "203"
    FAILURE = "500"


# ── Error code constants (input errors raised before any remote call) ──
class E:
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    NOT_FOUND = "ERR_NOT_FOUND"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_response(code: str, msg: str, *, data=None):
    """Return the client envelope as ``(Response, http_status)``."""
    body: dict = {"code": code, "msg": msg}
    if data is not None:
        body["data"] = data
    return jsonify(body), int(code)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
