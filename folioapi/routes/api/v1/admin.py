"""Admin routes for lockouts, the audit trail and schema migrations."""

import logging

from flask import jsonify, request
from flask_jwt_extended import get_current_user, jwt_required
import rollbar

from folioapi import limiter
from folioapi.errors import AuditWriteFailure, Error, StorageTimeout
from folioapi.routes.api.v1 import endpoints, error, error_from
from folioapi.services import AdminService
from folioapi.utils.rate_limiting import admin_limits, is_rate_limiting_disabled

logger = logging.getLogger()


def _handle(exc, action):
    """Map an exception raised by AdminService to a structured response."""
    if isinstance(exc, Error):
        if isinstance(exc, AuditWriteFailure | StorageTimeout):
            logger.error(f"[ROUTER]: {action} failed: {exc.message}")
            rollbar.report_exc_info()
        else:
            logger.warning(f"[ROUTER]: {action} rejected: {exc.message}")
        return error_from(exc)
    logger.error(f"[ROUTER]: {action} failed: {exc}")
    rollbar.report_exc_info()
    return error(status=500, detail="Generic Error")


@endpoints.route("/admin/attempts", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def list_recent_attempts():
    """
    List recorded login attempts, newest first.

    **Access**: `ADMIN` or `SUPERADMIN`

    **Query Parameters**:
    - `identifier`: Only attempts for this account or `ip:<address>`
    - `since`: ISO 8601 lower bound on `occurred_at`
    - `outcome`: `success` or `failure`
    - `page`, `per_page`: Pagination (max 500 per page)
    """
    logger.info("[ROUTER]: Listing auth attempts")
    try:
        result = AdminService.list_recent_attempts(
            get_current_user(),
            identifier=request.args.get("identifier"),
            since=request.args.get("since"),
            outcome=request.args.get("outcome"),
            page=request.args.get("page"),
            per_page=request.args.get("per_page"),
        )
    except Exception as e:
        return _handle(e, "list attempts")
    return jsonify(result), 200


@endpoints.route("/admin/lockouts", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def list_lockouts():
    """List lockout records with aggregate statistics.

    `locked_only=true` restricts the list to identifiers locked right now.
    """
    logger.info("[ROUTER]: Listing lockouts")
    try:
        result = AdminService.list_lockouts(
            get_current_user(),
            locked_only=request.args.get("locked_only", False),
            page=request.args.get("page"),
            per_page=request.args.get("per_page"),
        )
    except Exception as e:
        return _handle(e, "list lockouts")
    return jsonify(result), 200


@endpoints.route("/admin/lockouts/<string:identifier>", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def get_lockout_status(identifier):
    """
    Current lockout status of an identifier.

    **Response Schema**:
    ```json
    {
      "data": {
        "identifier": "alice@example.com",
        "locked": true,
        "failure_count": 5,
        "locked_until": "2026-01-01T10:15:00",
        "state": "locked",
        "retry_after": 840,
        "fail_closed": false
      }
    }
    ```

    `fail_closed` is true when the status could not be read and the identifier
    is reported locked for safety.
    """
    logger.info(f"[ROUTER]: Getting lockout status of {identifier}")
    try:
        status = AdminService.get_lockout_status(get_current_user(), identifier)
    except Exception as e:
        return _handle(e, "get lockout status")
    return jsonify({"data": status.serialize()}), 200


@endpoints.route("/admin/lockouts/<string:identifier>/unlock", methods=["POST"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def force_unlock(identifier):
    """
    Lift an active lockout. Always recorded as a forced LOCKOUT_CLEARED event.

    **Request Body** (optional):
    ```json
    {"reason": "Verified by phone", "reset_escalation": false}
    ```

    Unlocking an identifier that is not locked is a no-op.
    """
    logger.info(f"[ROUTER]: Force unlocking {identifier}")
    body = request.get_json(silent=True) or {}
    try:
        status = AdminService.force_unlock(
            get_current_user(),
            identifier,
            reason=body.get("reason"),
            reset_escalation=body.get("reset_escalation", False),
        )
    except Exception as e:
        return _handle(e, "force unlock")
    return jsonify({"data": status.serialize()}), 200


@endpoints.route("/admin/audit", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def list_audit_events():
    """
    List audit events of one partition in sequence order.

    **Query Parameters**:
    - `from`, `to`: Inclusive sequence range
    - `partition`: `global` (default) or `identifier:<id>`
    - `event_type`: Filter by event type
    """
    logger.info("[ROUTER]: Listing audit events")
    try:
        result = AdminService.list_audit_events(
            get_current_user(),
            from_sequence=request.args.get("from"),
            to_sequence=request.args.get("to"),
            partition=request.args.get("partition"),
            event_type=request.args.get("event_type"),
        )
    except Exception as e:
        return _handle(e, "list audit events")
    return jsonify(result), 200


@endpoints.route("/admin/audit/verify", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def verify_audit_chain():
    """
    Recompute the hash chain over a sequence range.

    **Response Schema**:
    ```json
    {
      "data": {
        "partition": "global",
        "valid": false,
        "checked": 41,
        "corrupt_at": 42,
        "reason": "hash mismatch"
      }
    }
    ```
    """
    logger.info("[ROUTER]: Verifying audit chain")
    try:
        verification = AdminService.verify_audit_chain(
            get_current_user(),
            from_sequence=request.args.get("from"),
            to_sequence=request.args.get("to"),
            partition=request.args.get("partition"),
        )
    except Exception as e:
        return _handle(e, "verify audit chain")
    return jsonify({"data": verification.serialize()}), 200


@endpoints.route("/admin/migrations", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def list_migrations():
    logger.info("[ROUTER]: Listing migrations")
    try:
        result = AdminService.list_migrations(get_current_user())
    except Exception as e:
        return _handle(e, "list migrations")
    return jsonify(result), 200


@endpoints.route("/admin/migrations/verify", methods=["GET"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def verify_schema():
    """
    Check that the tables behind lockouts, attempts, audit and migrations exist.

    **Access**: `ADMIN` or `SUPERADMIN`

    Answers 200 with `valid: false` and the `missing` tables when the schema is
    incomplete or the database could not be inspected.
    """
    logger.info("[ROUTER]: Verifying schema")
    try:
        result = AdminService.verify_schema(get_current_user())
    except Exception as e:
        return _handle(e, "verify schema")
    return jsonify({"data": result}), 200


@endpoints.route("/admin/migrations/run", methods=["POST"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def run_migrations():
    """
    Apply pending schema migrations.

    **Access**: `SUPERADMIN` only

    **Error Responses**:
    - `409 Conflict`: Another run is in progress (`migration_in_progress`) or a
      recorded migration was modified (`migration_checksum_mismatch`)

    A run that stopped on a failing migration still answers 200 with
    `success: false` and the failed version; nothing after it was attempted.
    """
    logger.info("[ROUTER]: Running migrations")
    try:
        result = AdminService.trigger_migration_run(get_current_user())
    except Exception as e:
        return _handle(e, "run migrations")
    return jsonify({"data": result.serialize()}), 200


@endpoints.route("/admin/migrations/halt", methods=["POST"])
@jwt_required()
@limiter.limit(admin_limits, exempt_when=is_rate_limiting_disabled)
def halt_migrations():
    """Stop an active run after its current step. Answers whether a run was active."""
    logger.info("[ROUTER]: Halting migrations")
    try:
        halted = AdminService.halt_migration_run(get_current_user())
    except Exception as e:
        return _handle(e, "halt migrations")
    return jsonify({"data": {"halt_requested": halted}}), 200
