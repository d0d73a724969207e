"""Standardised error results and API error responses.

Usage
-----
    from tracewell.utils.errors import api_error, failure, E

    return failure(E.NOT_FOUND, "Story not found")          # service layer
    return api_error(E.VALIDATION_INVALID, "Bad status")     # blueprint
    return result_response(result)                           # blueprint, from a service result
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    TRANSITION_NOT_ALLOWED = "ERR_TRANSITION_NOT_ALLOWED"
    NOTES_REQUIRED = "ERR_NOTES_REQUIRED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    VERSION_CONFLICT = "ERR_VERSION_CONFLICT"
    LOCKED = "ERR_LOCKED"
    CYCLE_LOCKED = "ERR_CYCLE_LOCKED"

    # Permissions – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.TRANSITION_NOT_ALLOWED: 400,
    E.NOTES_REQUIRED: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_DUPLICATE: 409,
    E.VERSION_CONFLICT: 409,
    E.LOCKED: 409,
    E.CYCLE_LOCKED: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
}


def failure(code: str, message: str, **extra) -> dict:
    """Build a failed service result.

    Business-rule rejections are returned, never raised; the UI renders
    ``error`` verbatim.
    """
    result = {"success": False, "error": message, "code": code}
    result.update(extra)
    return result


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
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (lock holder, version numbers, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "success": False,
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def result_response(result: dict, success_status: int = 200):
    """Translate a service result dict into a Flask response."""
    if result.get("success"):
        return jsonify(result), success_status
    details = {k: v for k, v in result.items() if k not in ("success", "error", "code")}
    return api_error(result.get("code", E.VALIDATION_INVALID), result.get("error", ""), details=details or None)
