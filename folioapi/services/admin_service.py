"""ADMIN SERVICE"""

import logging

from folioapi.errors import AuthError, NotAllowed
from folioapi.services.attempt_service import AttemptService
from folioapi.services.audit_service import AuditService
from folioapi.services.lockout_service import LockoutService
from folioapi.services.migration_service import MigrationService
from folioapi.utils.permissions import (
    can_force_unlock,
    can_run_migrations,
    is_admin_or_higher,
)
from folioapi.utils.security_events import log_admin_action, log_security_event
from folioapi.validators import (
    parse_bool,
    parse_pagination,
    parse_sequence_range,
    parse_timestamp,
    validate_event_type,
    validate_identifier,
    validate_outcome,
    validate_partition,
    validate_reason,
)

logger = logging.getLogger(__name__)


def require_admin(caller):
    """Guard for every administrative operation.

    ``caller`` is the authenticated user as resolved by the auth layer; nothing
    is read from the request context here.
    """
    if caller is None:
        raise AuthError("Authentication required")
    if not is_admin_or_higher(caller):
        log_security_event(
            "UNAUTHORIZED_ACCESS",
            user_id=str(getattr(caller, "id", "")),
            user_email=getattr(caller, "email", None),
            details={"required_role": "ADMIN"},
        )
        raise NotAllowed("Administrative privileges required")
    return caller


def _audit_action(caller, action, target=None):
    log_admin_action(str(caller.id), caller.email, action, target)


class AdminService:
    """Read and administrative-action surface behind the admin UI."""

    @staticmethod
    def list_recent_attempts(
        caller, identifier=None, since=None, outcome=None, page=1, per_page=50
    ):
        require_admin(caller)
        identifier = validate_identifier(identifier) if identifier else None
        since = parse_timestamp(since, "since")
        outcome = validate_outcome(outcome)
        page, per_page = parse_pagination(page, per_page)

        attempts, total = AttemptService.list_attempts(
            identifier=identifier,
            since=since,
            outcome=outcome,
            page=page,
            per_page=per_page,
        )
        return {
            "data": [attempt.serialize() for attempt in attempts],
            "page": page,
            "per_page": per_page,
            "total": total,
        }

    @staticmethod
    def get_lockout_status(caller, identifier):
        require_admin(caller)
        identifier = validate_identifier(identifier)
        return LockoutService.check_status(identifier)

    @staticmethod
    def list_lockouts(caller, locked_only=False, page=1, per_page=50):
        require_admin(caller)
        page, per_page = parse_pagination(page, per_page)
        statuses, total = LockoutService.list_lockouts(
            locked_only=parse_bool(locked_only), page=page, per_page=per_page
        )
        return {
            "data": [status.serialize() for status in statuses],
            "page": page,
            "per_page": per_page,
            "total": total,
            "statistics": LockoutService.get_statistics(),
        }

    @staticmethod
    def force_unlock(caller, identifier, reason=None, reset_escalation=False):
        require_admin(caller)
        if not can_force_unlock(caller):
            raise NotAllowed("Not allowed to lift lockouts")
        identifier = validate_identifier(identifier)
        reason = validate_reason(reason)

        status = LockoutService.force_unlock(
            identifier,
            actor=caller,
            reason=reason,
            reset_escalation=parse_bool(reset_escalation),
        )
        _audit_action(caller, "force_unlock", identifier)
        return status

    @staticmethod
    def list_audit_events(
        caller, from_sequence=None, to_sequence=None, partition=None, event_type=None
    ):
        require_admin(caller)
        from_sequence, to_sequence = parse_sequence_range(from_sequence, to_sequence)
        partition = validate_partition(partition)
        event_type = validate_event_type(event_type)

        events = AuditService.list_events(
            from_sequence=from_sequence,
            to_sequence=to_sequence,
            partition=partition,
            event_type=event_type,
            limit=500,
        )
        return {
            "partition": partition,
            "data": [audit_event.serialize() for audit_event in events],
        }

    @staticmethod
    def verify_audit_chain(
        caller, from_sequence=None, to_sequence=None, partition=None
    ):
        require_admin(caller)
        from_sequence, to_sequence = parse_sequence_range(from_sequence, to_sequence)
        partition = validate_partition(partition)
        return AuditService.verify_chain(
            from_sequence=from_sequence, to_sequence=to_sequence, partition=partition
        )

    @staticmethod
    def list_migrations(caller):
        require_admin(caller)
        return {
            "data": [record.serialize() for record in MigrationService.status()],
            "summary": MigrationService.summary(),
        }

    @staticmethod
    def verify_schema(caller):
        require_admin(caller)
        return MigrationService.verify_schema()

    @staticmethod
    def trigger_migration_run(caller, catalog=None):
        require_admin(caller)
        if not can_run_migrations(caller):
            raise NotAllowed("Only superadmins can run migrations")
        _audit_action(caller, "run_migrations")
        return MigrationService.run(catalog=catalog, actor=caller)

    @staticmethod
    def halt_migration_run(caller):
        require_admin(caller)
        if not can_run_migrations(caller):
            raise NotAllowed("Only superadmins can halt migrations")
        _audit_action(caller, "halt_migrations")
        return MigrationService.request_halt()
