"""ATTEMPT SERVICE"""

import logging
import warnings

import rollbar
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from folioapi import db
from folioapi.errors import AuditWriteFailure, TrackingDegraded, ValidationError
from folioapi.models import AuthAttempt
from folioapi.models.auth_attempt import OUTCOMES
from folioapi.services.audit_service import AuditService
from folioapi.utils.database import retry_db_operation
from folioapi.utils.durations import parse_duration, to_naive_utc, utcnow
from folioapi.utils.security_events import log_security_event

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 255
WRITE_RETRIES = 5


def validate_identifier(identifier):
    if not isinstance(identifier, str) or not identifier.strip():
        raise ValidationError("Identifier must be a non-empty string", "identifier")
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError("Identifier is too long", "identifier")
    return identifier.strip()


class AttemptService:
    """Durable history of login attempts, the raw material of the lockout policy."""

    @staticmethod
    def record_attempt(identifier, outcome, metadata=None, occurred_at=None):
        """Persist one attempt together with its LOGIN_* audit event.

        Tracking must never block authentication: storage failures are logged,
        reported and surfaced as a ``TrackingDegraded`` warning, and the call
        returns None.
        """
        identifier = validate_identifier(identifier)
        if outcome not in OUTCOMES:
            raise ValidationError(f"Unknown outcome: {outcome}", "outcome")
        metadata = dict(metadata or {})
        occurred_at = to_naive_utc(occurred_at) if occurred_at else utcnow()

        attempt = AuthAttempt(
            identifier=identifier,
            outcome=outcome,
            occurred_at=occurred_at,
            ip_address=metadata.pop("ip_address", None),
            user_agent=metadata.pop("user_agent", None),
            context=metadata,
        )
        try:
            AttemptService._persist(attempt)
        except (SQLAlchemyError, AuditWriteFailure) as e:
            logger.error(f"[SERVICE]: Could not record attempt for {identifier}: {e}")
            rollbar.report_exc_info()
            log_security_event(
                "TRACKING_DEGRADED",
                details={"identifier": identifier, "outcome": outcome},
                level="error",
            )
            warnings.warn(
                TrackingDegraded(f"Attempt for {identifier} was not recorded"),
                stacklevel=2,
            )
            return None

        logger.debug(f"[SERVICE]: Recorded {outcome} attempt for {identifier}")
        return attempt

    @staticmethod
    def _persist(attempt):
        success = attempt.outcome == "success"
        event_type = "LOGIN_SUCCESS" if success else "LOGIN_FAILURE"
        for remaining in reversed(range(WRITE_RETRIES)):
            try:
                db.session.add(attempt)
                AuditService.append(
                    event_type,
                    {
                        "identifier": attempt.identifier,
                        "attempt_id": str(attempt.id),
                        "ip_address": attempt.ip_address,
                    },
                    identifier=attempt.identifier,
                    occurred_at=attempt.occurred_at,
                )
                db.session.commit()
                return
            except (IntegrityError, StaleDataError):
                db.session.rollback()
                if not remaining:
                    raise
            except Exception:
                db.session.rollback()
                raise

    @staticmethod
    def _failures_query(identifier, window, since=None, now=None):
        now = to_naive_utc(now) if now else utcnow()
        lower_bound = now - parse_duration(window)
        query = db.session.query(AuthAttempt).filter(
            AuthAttempt.identifier == identifier,
            AuthAttempt.outcome == "failure",
            AuthAttempt.occurred_at > lower_bound,
            AuthAttempt.occurred_at <= now,
        )
        if since is not None:
            query = query.filter(AuthAttempt.occurred_at >= to_naive_utc(since))
        return query

    @staticmethod
    def recent_failures(
        identifier, window, since=None, before=None, limit=None, now=None
    ):
        """Failures inside the window, newest first.

        ``before`` resumes an interrupted read: pass the ``occurred_at`` of the
        last row received.
        """
        query = AttemptService._failures_query(identifier, window, since, now)
        if before is not None:
            query = query.filter(AuthAttempt.occurred_at < to_naive_utc(before))
        query = query.order_by(AuthAttempt.occurred_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def count_recent_failures(identifier, window, since=None, now=None):
        query = AttemptService._failures_query(identifier, window, since, now)
        return query.with_entities(func.count(AuthAttempt.id)).scalar() or 0

    @staticmethod
    @retry_db_operation(max_retries=2, backoff_seconds=0.5)
    def list_attempts(identifier=None, since=None, outcome=None, page=1, per_page=50):
        logger.info("[SERVICE]: Listing auth attempts")
        query = db.session.query(AuthAttempt)
        if identifier:
            query = query.filter(AuthAttempt.identifier == identifier)
        if since is not None:
            query = query.filter(AuthAttempt.occurred_at >= to_naive_utc(since))
        if outcome:
            query = query.filter(AuthAttempt.outcome == outcome)

        total = query.count()
        attempts = (
            query.order_by(AuthAttempt.occurred_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return attempts, total

    @staticmethod
    def get_statistics(window="24h", top=10):
        since = utcnow() - parse_duration(window)
        failures = db.session.query(AuthAttempt).filter(
            AuthAttempt.outcome == "failure", AuthAttempt.occurred_at > since
        )
        top_ips = (
            failures.filter(AuthAttempt.ip_address.isnot(None))
            .with_entities(AuthAttempt.ip_address, func.count(AuthAttempt.id))
            .group_by(AuthAttempt.ip_address)
            .order_by(func.count(AuthAttempt.id).desc())
            .limit(top)
            .all()
        )
        return {
            "recent_failures": failures.count(),
            "top_failing_ips": [{"ip_address": ip, "count": n} for ip, n in top_ips],
        }

    @staticmethod
    def cleanup_old_attempts(retention):
        """Delete attempts older than ``retention``; returns the number removed."""
        cutoff = utcnow() - parse_duration(retention)
        logger.info(f"[SERVICE]: Removing auth attempts older than {cutoff}")
        try:
            removed = (
                db.session.query(AuthAttempt)
                .filter(AuthAttempt.occurred_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            rollbar.report_exc_info()
            raise
        return removed
