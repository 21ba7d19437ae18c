from flask import Blueprint, jsonify

from folioapi.errors import (
    AuditWriteFailure,
    AuthError,
    ConcurrentMigrationError,
    LockoutActiveError,
    MigrationChecksumMismatch,
    NotAllowed,
    StorageTimeout,
    ValidationError,
)

# GENERIC Error


def error(status=400, detail="Bad Request", error_code=None, **extra):
    body = {"status": status, "detail": detail}
    if error_code:
        body["error_code"] = error_code
    body.update(extra)
    return jsonify(body), status


ERROR_STATUS = (
    (ValidationError, 400),
    (AuthError, 401),
    (NotAllowed, 403),
    (ConcurrentMigrationError, 409),
    (MigrationChecksumMismatch, 409),
    (LockoutActiveError, 423),
    (AuditWriteFailure, 500),
    (StorageTimeout, 503),
)


def error_from(exc):
    """Structured response for a known application error."""
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            body = dict(exc.serialize)
            return error(status=status, detail=body.pop("message"), **body)
    return error(status=500, detail="Generic Error")


endpoints = Blueprint("endpoints", __name__)
import folioapi.routes.api.v1.admin  # noqa: E402, F401
