"""JSON error bodies for the projection API.

Every failure leaves the API as ``{"error": <message>, "code": <ERR_*>}``,
with an optional ``details`` object (field problems, current lifecycle
state). Dashboards switch on ``code``, never on the message text.

    from merchops.utils.errors import E, api_error

    return api_error(E.VALIDATION_REQUIRED, "po_number is required")
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes, grouped by the HTTP status they answer with."""

    # 400: the request itself is malformed
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    # 422: well-formed, but breaks a business rule
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    # 404
    NOT_FOUND = "ERR_NOT_FOUND"
    # 409: PO already allocated / illegal lifecycle move / stale version
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"
    # 500
    DATABASE = "ERR_DATABASE"


_STATUS_BY_CODE = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.DATABASE: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view.

    The status comes from *code* unless overridden; unknown codes answer 400.
    """
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
