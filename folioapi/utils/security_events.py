"""Security event logging for the Folio API

Operational signals only. The tamper-evident record of the same events lives
in the audit log (``folioapi.services.audit_service``); these go to the
application log and, from ``warning`` up, to Rollbar.
"""

import logging
from typing import Any, Optional

from flask import has_request_context, request
from flask_limiter.util import get_remote_address
import rollbar

from folioapi.utils.durations import isoformat, utcnow

logger = logging.getLogger(__name__)

# event type -> (description, default level)
SECURITY_EVENTS = {
    "LOGIN_SUCCESS": ("Login succeeded", "info"),
    "LOGIN_FAILURE": ("Login failed", "warning"),
    "LOGIN_BLOCKED": ("Login rejected while locked out", "warning"),
    "ACCOUNT_LOCKED": ("Identifier locked after repeated failures", "warning"),
    "ACCOUNT_UNLOCKED": ("Identifier lockout cleared", "info"),
    "LOCKOUT_FAIL_CLOSED": ("Lockout status unavailable, failing closed", "error"),
    "TRACKING_DEGRADED": ("Login attempt could not be recorded", "error"),
    "ADMIN_ACTION": ("Administrative action performed", "info"),
    "UNAUTHORIZED_ACCESS": ("Caller lacks the required role", "warning"),
    "AUDIT_WRITE_FAILURE": ("Audit event could not be persisted", "error"),
    "AUDIT_CHAIN_CORRUPT": ("Audit hash chain verification failed", "critical"),
    "MIGRATION_CHECKSUM_MISMATCH": (
        "Recorded migration differs from its definition",
        "critical",
    ),
    "RATE_LIMIT_HIT": ("Rate limit exceeded", "warning"),
}

REPORTED_LEVELS = ("warning", "error", "critical")


def _request_info():
    if not has_request_context():
        return {}
    return {
        "ip_address": get_remote_address(),
        "user_agent": request.headers.get("User-Agent", "Unknown"),
        "method": request.method,
        "path": request.path,
    }


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    level: Optional[str] = None,
) -> None:
    """
    Log a security event and report it to Rollbar when it is at least a warning.

    Args:
        event_type: Key of SECURITY_EVENTS
        user_id: ID of the user involved (if applicable)
        user_email: Email of the user involved (if applicable)
        details: Additional details about the event
        level: Overrides the event's default level
    """
    description, default_level = SECURITY_EVENTS.get(
        event_type, ("Unknown security event", "warning")
    )
    level = level or default_level

    event_data = {
        "event_type": event_type,
        "event_description": description,
        "timestamp": isoformat(utcnow()),
        "user_id": user_id,
        "user_email": user_email,
        "details": details or {},
        "request_info": _request_info(),
    }
    event_data = {k: v for k, v in event_data.items() if v is not None}

    subject = user_email or (details or {}).get("identifier")
    log_message = f"SECURITY_EVENT: {event_type}"
    if subject:
        log_message += f" [{subject}]"
    getattr(logger, level)(log_message, extra={"security_event": event_data})

    if level not in REPORTED_LEVELS:
        return
    try:
        rollbar.report_message(
            message=f"Security Event: {event_type}",
            level=level,
            extra_data=event_data,
        )
    except Exception as e:
        logger.error(f"Failed to send security event to Rollbar: {e}")


def log_authentication_event(
    success: bool, email: str, reason: Optional[str] = None
) -> None:
    if success:
        log_security_event("LOGIN_SUCCESS", user_email=email)
    else:
        log_security_event(
            "LOGIN_FAILURE", user_email=email, details={"reason": reason}
        )


def log_lockout_event(
    identifier: str, locked: bool, details: Optional[dict[str, Any]] = None
) -> None:
    log_security_event(
        "ACCOUNT_LOCKED" if locked else "ACCOUNT_UNLOCKED",
        details={"identifier": identifier, **(details or {})},
    )


def log_admin_action(
    admin_user_id: str, admin_email: str, action: str, target: Optional[str] = None
) -> None:
    log_security_event(
        "ADMIN_ACTION",
        user_id=admin_user_id,
        user_email=admin_email,
        details={"action": action, "target": target},
    )


def log_rate_limit_exceeded(limit_type: str, user_id: Optional[str] = None) -> None:
    log_security_event(
        "RATE_LIMIT_HIT", user_id=user_id, details={"limit_type": limit_type}
    )
