"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, error_response, E

    return api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    return error_response(exc)          # any app.core.exceptions type
"""

from __future__ import annotations

from flask import jsonify

from app.core import exceptions as exc_types


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Scheduling codes mirror the ``code`` attribute of the matching
    exception class in ``app.core.exceptions``.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    ALREADY_BOOKED = exc_types.AlreadyBooked.code
    RESOURCE_CONFLICT = exc_types.ResourceConflict.code

    # Business rule – HTTP 422
    BUSINESS_RULE = "ERR_VALIDATION_INVALID"
    INVALID_TRANSITION = exc_types.InvalidTransition.code
    RECURRENCE_PARSE = exc_types.RecurrenceParseError.code
    INVALID_EXCEPTION_SHAPE = exc_types.InvalidExceptionShape.code
    INVALID_TARGET_SHAPE = exc_types.InvalidTargetShape.code
    CYCLE_DETECTED = exc_types.CycleDetected.code
    SELF_LOOP = exc_types.SelfLoopRejected.code
    GAP_VIOLATION = exc_types.GapViolation.code

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.ALREADY_BOOKED: 409,
    E.RESOURCE_CONFLICT: 409,
    E.BUSINESS_RULE: 422,
    E.INVALID_TRANSITION: 422,
    E.RECURRENCE_PARSE: 422,
    E.INVALID_EXCEPTION_SHAPE: 422,
    E.INVALID_TARGET_SHAPE: 422,
    E.CYCLE_DETECTED: 422,
    E.SELF_LOOP: 422,
    E.GAP_VIOLATION: 422,
    E.INTERNAL: 500,
}


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
        Extra structured payload (conflicting ids, violated bounds, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def error_response(error: Exception):
    """Translate a platform exception into ``api_error`` output.

    NotFoundError hides tenant/id details from the body so cross-tenant
    lookups look exactly like missing rows.
    """
    if isinstance(error, exc_types.NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")
    if isinstance(error, exc_types.ConflictError):
        return api_error(error.code, str(error), status=409, details=error.details)
    if isinstance(error, exc_types.ValidationError):
        return api_error(error.code, str(error), status=422, details=error.details)
    return api_error(E.INTERNAL, "Internal server error")
