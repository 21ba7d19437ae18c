"""LOCKOUT SERVICE"""

from contextlib import contextmanager
import logging
import math
import threading

from flask import current_app
import rollbar
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from folioapi import db
from folioapi.config import SETTINGS
from folioapi.errors import AuditWriteFailure, LockoutActiveError, StorageTimeout
from folioapi.models import LockoutRecord
from folioapi.services.attempt_service import AttemptService, validate_identifier
from folioapi.services.audit_service import AuditService
from folioapi.utils.database import storage_timeout_guard
from folioapi.utils.durations import isoformat, parse_duration, to_naive_utc, utcnow
from folioapi.utils.security_events import log_lockout_event, log_security_event

logger = logging.getLogger(__name__)

# Bounded retries when another writer changed the same record or partition head
UNIT_RETRIES = 5

CLEAR = "clear"
WARNING = "warning"
LOCKED = "locked"
UNKNOWN = "unknown"


class LockoutConfig:
    """Lockout settings from the Flask app config, falling back to SETTINGS."""

    @staticmethod
    def _get_config():
        try:
            return current_app.config.get("LOCKOUT") or SETTINGS.get("LOCKOUT", {})
        except RuntimeError:
            return SETTINGS.get("LOCKOUT", {})

    @classmethod
    def get(cls, key, default=None):
        return cls._get_config().get(key, default)

    @classmethod
    def track_ip(cls):
        return bool(cls.get("TRACK_IP", False))

    @staticmethod
    def storage_timeout():
        try:
            return current_app.config.get("STORAGE_TIMEOUT_SECONDS", 5)
        except RuntimeError:
            return SETTINGS.get("STORAGE_TIMEOUT_SECONDS", 5)


class LockoutPolicy:
    """Sliding window threshold plus exponential backoff lock durations."""

    def __init__(
        self,
        threshold=5,
        window="15m",
        base_duration="15m",
        max_duration="24h",
        repeat_offense_window="24h",
    ):
        self.threshold = int(threshold)
        self.window = parse_duration(window)
        self.base_duration = parse_duration(base_duration)
        self.max_duration = parse_duration(max_duration)
        self.repeat_offense_window = parse_duration(repeat_offense_window)

        if self.threshold < 1:
            raise ValueError("Lockout threshold must be at least 1")
        if not self.window or not self.base_duration:
            raise ValueError("Lockout window and base duration must be positive")
        if self.max_duration < self.base_duration:
            raise ValueError("Lockout max duration must be >= base duration")

    @classmethod
    def from_config(cls):
        return cls(
            threshold=LockoutConfig.get("THRESHOLD", 5),
            window=LockoutConfig.get("WINDOW", "15m"),
            base_duration=LockoutConfig.get("BASE_DURATION", "15m"),
            max_duration=LockoutConfig.get("MAX_DURATION", "24h"),
            repeat_offense_window=LockoutConfig.get("REPEAT_OFFENSE_WINDOW", "24h"),
        )

    def lock_duration(self, offense_level):
        # Cap the exponent so huge offense levels cannot overflow timedelta
        factor = 2 ** min(max(offense_level, 0), 32)
        return min(self.base_duration * factor, self.max_duration)


class LockoutStatus:
    def __init__(
        self,
        identifier,
        locked,
        failure_count=0,
        locked_until=None,
        state=CLEAR,
        retry_after_seconds=None,
        fail_closed=False,
    ):
        self.identifier = identifier
        self.locked = locked
        self.failure_count = failure_count
        self.locked_until = locked_until
        self.state = state
        self.retry_after_seconds = retry_after_seconds
        self.fail_closed = fail_closed

    def __repr__(self):
        return f"<LockoutStatus {self.identifier!r} {self.state}>"

    def serialize(self):
        return {
            "identifier": self.identifier,
            "locked": self.locked,
            "failure_count": self.failure_count,
            "locked_until": isoformat(self.locked_until),
            "state": self.state,
            "retry_after": self.retry_after_seconds,
            "fail_closed": self.fail_closed,
        }


class IdentifierLocks:
    """In-process mutex per identifier, dropped once nobody waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, identifier, timeout):
        with self._guard:
            entry = self._locks.setdefault(identifier, [threading.Lock(), 0])
            entry[1] += 1
        acquired = False
        try:
            acquired = entry[0].acquire(timeout=timeout)
            if not acquired:
                raise StorageTimeout(
                    f"Timed out waiting for lockout state of {identifier}"
                )
            yield
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(identifier, None)


identifier_locks = IdentifierLocks()


def _retry_after(locked_until, now):
    return max(int(math.ceil((locked_until - now).total_seconds())), 1)


def _is_deadlock(error):
    return "deadlock detected" in str(error).lower()


class LockoutService:
    """Lockout state machine: Clear -> Warning -> Locked -> Clear.

    Each transition and its audit event commit in one transaction. Writers for
    one identifier are serialized in-process and, across processes, by a row
    lock plus the record's version column.
    """

    @staticmethod
    def _now(now=None):
        return to_naive_utc(now) if now else utcnow()

    @staticmethod
    def _expire_if_due(record, now, events):
        """Lazy Locked -> Clear transition once ``locked_until`` has passed."""
        if record.locked_until is None or now < record.locked_until:
            return False
        expired_at = record.locked_until
        record.last_unlocked_at = expired_at
        record.reset_at = expired_at
        record.locked_until = None
        record.failure_count = 0
        record.window_start = None
        events.append(
            (
                "LOCKOUT_CLEARED",
                {
                    "identifier": record.identifier,
                    "forced": False,
                    "reason": "expired",
                    "expired_at": isoformat(expired_at),
                },
            )
        )
        logger.info(f"[LOCKOUT]: Lock on {record.identifier} expired at {expired_at}")
        return True

    @staticmethod
    def _run_unit(identifier, mutate, now, create=True):
        """Load the record, apply ``mutate`` and commit it with its audit events.

        ``mutate(record, now, events)`` changes the record in place and appends
        ``(event_type, payload)`` pairs to ``events``. Returns the record (or
        None when it does not exist and ``create`` is False).
        """
        last_error = None
        for _attempt in range(UNIT_RETRIES):
            try:
                with storage_timeout_guard(f"lockout update for {identifier}"):
                    record = (
                        db.session.query(LockoutRecord)
                        .filter_by(identifier=identifier)
                        .with_for_update()
                        .one_or_none()
                    )
                    if record is None:
                        if not create:
                            db.session.rollback()
                            return None
                        record = LockoutRecord(identifier)
                        db.session.add(record)

                    events = []
                    LockoutService._expire_if_due(record, now, events)
                    mutate(record, now, events)
                    for event_type, payload in events:
                        AuditService.append(
                            event_type, payload, identifier=identifier, occurred_at=now
                        )
                    db.session.commit()
                    return record
            except (IntegrityError, StaleDataError) as e:
                db.session.rollback()
                last_error = e
                logger.info(f"[LOCKOUT]: Concurrent update on {identifier}, retrying")
            except OperationalError as e:
                db.session.rollback()
                if not _is_deadlock(e):
                    raise
                last_error = e
                logger.info(f"[LOCKOUT]: Lock contention on {identifier}, retrying")
            except Exception:
                db.session.rollback()
                raise

        raise StorageTimeout(
            f"Lockout state of {identifier} kept changing underneath the update"
        ) from last_error

    @staticmethod
    def _status_from_record(record, now, failure_count=None):
        if record is None:
            return LockoutStatus(identifier=None, locked=False)
        count = record.failure_count if failure_count is None else failure_count
        if record.is_locked(now):
            return LockoutStatus(
                identifier=record.identifier,
                locked=True,
                failure_count=count,
                locked_until=record.locked_until,
                state=LOCKED,
                retry_after_seconds=_retry_after(record.locked_until, now),
            )
        return LockoutStatus(
            identifier=record.identifier,
            locked=False,
            failure_count=count,
            state=WARNING if count > 0 else CLEAR,
        )

    @staticmethod
    def record_failure(identifier, metadata=None, now=None, policy=None):
        """Track a failed login and apply the lockout policy.

        The failure is counted even when the tracker could not persist it.
        A failure while locked is counted but never moves ``locked_until``.
        """
        identifier = validate_identifier(identifier)
        policy = policy or LockoutPolicy.from_config()
        now = LockoutService._now(now)

        with identifier_locks.hold(identifier, LockoutConfig.storage_timeout()):
            attempt = AttemptService.record_attempt(
                identifier, "failure", metadata, occurred_at=now
            )
            untracked = 1 if attempt is None else 0
            applied = []

            def apply_failure(record, now, events):
                applied.clear()
                count = (
                    AttemptService.count_recent_failures(
                        identifier, policy.window, since=record.reset_at, now=now
                    )
                    + untracked
                )
                if record.window_start is None or record.window_start <= (
                    now - policy.window
                ):
                    record.window_start = now
                record.failure_count = count
                record.last_failure_at = now

                if record.is_locked(now) or count < policy.threshold:
                    return

                repeat = (
                    record.last_unlocked_at is not None
                    and now - record.last_unlocked_at <= policy.repeat_offense_window
                )
                record.offense_level = record.offense_level + 1 if repeat else 0
                duration = policy.lock_duration(record.offense_level)
                record.locked_until = now + duration
                record.last_locked_duration_seconds = int(duration.total_seconds())
                events.append(
                    (
                        "LOCKOUT_APPLIED",
                        {
                            "identifier": identifier,
                            "failure_count": count,
                            "locked_until": isoformat(record.locked_until),
                            "duration_seconds": record.last_locked_duration_seconds,
                            "offense_level": record.offense_level,
                        },
                    )
                )
                applied.append(True)

            record = LockoutService._run_unit(identifier, apply_failure, now)

        status = LockoutService._status_from_record(record, now)
        if applied:
            log_lockout_event(
                identifier,
                True,
                {
                    "failure_count": status.failure_count,
                    "locked_until": isoformat(status.locked_until),
                },
            )
        return status

    @staticmethod
    def record_success(identifier, metadata=None, now=None):
        """Track a successful login; resets the failure count, never an active lock."""
        identifier = validate_identifier(identifier)
        now = LockoutService._now(now)

        with identifier_locks.hold(identifier, LockoutConfig.storage_timeout()):
            AttemptService.record_attempt(
                identifier, "success", metadata, occurred_at=now
            )

            def apply_success(record, now, events):
                # locked_until stays as is
                record.failure_count = 0
                record.window_start = None
                record.reset_at = now

            record = LockoutService._run_unit(
                identifier, apply_success, now, create=False
            )

        if record is None:
            return LockoutStatus(identifier=identifier, locked=False)
        return LockoutService._status_from_record(record, now)

    @staticmethod
    def check_status(identifier, now=None, policy=None):
        """Current lockout status. Fails closed on any storage problem."""
        identifier = validate_identifier(identifier)
        policy = policy or LockoutPolicy.from_config()
        now = LockoutService._now(now)

        try:
            with identifier_locks.hold(identifier, LockoutConfig.storage_timeout()):
                with storage_timeout_guard(f"lockout status for {identifier}"):
                    record = db.session.get(LockoutRecord, identifier)
                    if record is None:
                        return LockoutStatus(identifier=identifier, locked=False)

                    if record.locked_until is not None and now >= record.locked_until:
                        expired = []

                        def note_expiry(record, now, events):
                            # Another writer may already have cleared it
                            expired[:] = events

                        record = LockoutService._run_unit(identifier, note_expiry, now)
                        if expired:
                            log_lockout_event(identifier, False, {"reason": "expired"})

                    if record.is_locked(now):
                        return LockoutService._status_from_record(record, now)

                    count = AttemptService.count_recent_failures(
                        identifier, policy.window, since=record.reset_at, now=now
                    )
                    return LockoutService._status_from_record(record, now, count)
        except (SQLAlchemyError, StorageTimeout, AuditWriteFailure) as e:
            db.session.rollback()
            logger.error(f"[LOCKOUT]: Status of {identifier} unavailable: {e}")
            rollbar.report_exc_info()
            log_security_event(
                "LOCKOUT_FAIL_CLOSED", details={"identifier": identifier}, level="error"
            )
            return LockoutStatus(
                identifier=identifier, locked=True, state=UNKNOWN, fail_closed=True
            )

    @staticmethod
    def force_unlock(
        identifier, actor=None, reason=None, reset_escalation=False, now=None
    ):
        """Administrative override: Locked -> Clear, always audited.

        A no-op, without an audit event, when the identifier is not locked.
        Escalation history is kept unless ``reset_escalation`` is set.
        """
        identifier = validate_identifier(identifier)
        now = LockoutService._now(now)
        actor_id = str(getattr(actor, "id", actor)) if actor is not None else None
        cleared = []

        def apply_unlock(record, now, events):
            cleared.clear()
            if not record.is_locked(now):
                return
            record.locked_until = None
            record.failure_count = 0
            record.window_start = None
            record.reset_at = now
            record.last_unlocked_at = now
            if reset_escalation:
                record.offense_level = 0
                record.last_unlocked_at = None
            events.append(
                (
                    "LOCKOUT_CLEARED",
                    {
                        "identifier": identifier,
                        "forced": True,
                        "actor": actor_id,
                        "reason": reason,
                        "reset_escalation": bool(reset_escalation),
                    },
                )
            )
            cleared.append(True)

        with identifier_locks.hold(identifier, LockoutConfig.storage_timeout()):
            record = LockoutService._run_unit(
                identifier, apply_unlock, now, create=False
            )

        if cleared:
            logger.info(f"[LOCKOUT]: {identifier} unlocked by {actor_id}")
            log_lockout_event(identifier, False, {"actor": actor_id, "reason": reason})
        if record is None:
            return LockoutStatus(identifier=identifier, locked=False)
        return LockoutService._status_from_record(record, now)

    @staticmethod
    def identifiers_for_request(email, request):
        identifiers = [email.strip().lower()]
        if LockoutConfig.track_ip() and request.remote_addr:
            identifiers.append(f"ip:{request.remote_addr}")
        return identifiers

    @staticmethod
    def check_login_allowed(identifiers, now=None):
        """Login gate. Raises LockoutActiveError if any identifier is locked."""
        statuses = []
        for identifier in identifiers:
            status = LockoutService.check_status(identifier, now=now)
            if status.locked:
                log_security_event(
                    "LOGIN_BLOCKED",
                    details={
                        "identifier": identifier,
                        "fail_closed": status.fail_closed,
                    },
                )
                raise LockoutActiveError(
                    "Too many failed attempts, try again later",
                    identifier=identifier,
                    retry_after_seconds=status.retry_after_seconds,
                )
            statuses.append(status)
        return statuses

    @staticmethod
    def record_failures(identifiers, metadata=None, reason=None, now=None):
        metadata = dict(metadata or {})
        if reason:
            metadata["reason"] = reason
        statuses = []
        for identifier in identifiers:
            try:
                statuses.append(
                    LockoutService.record_failure(identifier, dict(metadata), now=now)
                )
            except (AuditWriteFailure, StorageTimeout, SQLAlchemyError) as e:
                logger.error(f"[LOCKOUT]: Could not apply failure to {identifier}: {e}")
                rollbar.report_exc_info()
                statuses.append(LockoutService.check_status(identifier, now=now))
        return statuses

    @staticmethod
    def record_successes(identifiers, metadata=None, now=None):
        statuses = []
        for identifier in identifiers:
            try:
                statuses.append(
                    LockoutService.record_success(identifier, dict(metadata or {}), now)
                )
            except (AuditWriteFailure, StorageTimeout, SQLAlchemyError) as e:
                logger.error(f"[LOCKOUT]: Could not reset {identifier}: {e}")
                rollbar.report_exc_info()
        return statuses

    @staticmethod
    def list_lockouts(locked_only=False, page=1, per_page=50, now=None):
        now = LockoutService._now(now)
        query = db.session.query(LockoutRecord)
        if locked_only:
            query = query.filter(LockoutRecord.locked_until > now)
        total = query.count()
        records = (
            query.order_by(LockoutRecord.last_failure_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return [LockoutService._status_from_record(r, now) for r in records], total

    @staticmethod
    def get_statistics(now=None):
        now = LockoutService._now(now)
        policy = LockoutPolicy.from_config()
        total_locked = (
            db.session.query(LockoutRecord)
            .filter(LockoutRecord.locked_until > now)
            .count()
        )
        stats = {
            "total_locked": total_locked,
            "window_seconds": int(policy.window.total_seconds()),
            "threshold": policy.threshold,
        }
        stats.update(AttemptService.get_statistics(window=policy.window))
        return stats
