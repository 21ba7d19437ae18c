"""Tests for the lockout policy engine"""

import datetime
import threading

import pytest
from sqlalchemy import text

from folioapi import db
from folioapi.errors import AuditWriteFailure, TrackingDegraded, ValidationError
from folioapi.models import AuditEvent, AuthAttempt, LockoutRecord
from folioapi.services import AuditService, LockoutService
from folioapi.services.lockout_service import LockoutPolicy, identifier_locks

T0 = datetime.datetime(2026, 1, 1, 10, 0, 0)
ALICE = "alice@example.com"


def minutes(n):
    return T0 + datetime.timedelta(minutes=n)


def events_of(event_type):
    return (
        db.session.query(AuditEvent)
        .filter_by(event_type=event_type)
        .order_by(AuditEvent.sequence)
        .all()
    )


def fail_at(identifier, *offsets):
    status = None
    for offset in offsets:
        status = LockoutService.record_failure(identifier, now=minutes(offset))
    return status


class TestLockoutPolicy:
    def test_lock_duration_doubles_per_offense(self):
        policy = LockoutPolicy(3, "10m", "15m", "1h", "24h")
        assert policy.lock_duration(0) == datetime.timedelta(minutes=15)
        assert policy.lock_duration(1) == datetime.timedelta(minutes=30)
        assert policy.lock_duration(2) == datetime.timedelta(minutes=60)

    def test_lock_duration_is_capped(self):
        policy = LockoutPolicy(3, "10m", "15m", "1h", "24h")
        assert policy.lock_duration(3) == datetime.timedelta(hours=1)
        assert policy.lock_duration(500) == datetime.timedelta(hours=1)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"threshold": 0},
            {"window": "0"},
            {"base_duration": "2h", "max_duration": "1h"},
            {"window": "soon"},
        ],
    )
    def test_invalid_policy_is_rejected(self, kwargs):
        with pytest.raises(ValueError):
            LockoutPolicy(**kwargs)

    def test_from_config_reads_app_config(self, app):
        policy = LockoutPolicy.from_config()
        assert policy.threshold == 3
        assert policy.window == datetime.timedelta(minutes=10)


class TestAliceScenario:
    """Three failures inside the window lock the identifier"""

    def test_third_failure_locks(self, app):
        assert not fail_at(ALICE, 0).locked
        assert not fail_at(ALICE, 1).locked
        status = fail_at(ALICE, 2)

        assert status.locked
        assert status.state == "locked"
        assert status.failure_count == 3
        assert status.locked_until == minutes(2) + datetime.timedelta(minutes=15)
        assert status.retry_after_seconds == 15 * 60

        applied = events_of("LOCKOUT_APPLIED")
        assert len(applied) == 1
        assert applied[0].payload["identifier"] == ALICE
        assert applied[0].payload["failure_count"] == 3

    def test_failure_while_locked_keeps_locked_until(self, app):
        locked = fail_at(ALICE, 0, 1, 2)
        status = fail_at(ALICE, 3)

        assert status.locked
        assert status.locked_until == locked.locked_until
        assert len(events_of("LOCKOUT_APPLIED")) == 1
        assert db.session.query(AuthAttempt).filter_by(identifier=ALICE).count() == 4

    def test_force_unlock_clears_and_is_audited(self, app):
        fail_at(ALICE, 0, 1, 2, 3)

        status = LockoutService.force_unlock(
            ALICE, actor="ops@example.com", reason="verified", now=minutes(4)
        )

        assert status.locked is False
        assert LockoutService.check_status(ALICE, now=minutes(4)).locked is False
        cleared = events_of("LOCKOUT_CLEARED")
        assert len(cleared) == 1
        assert cleared[0].payload["forced"] is True
        assert cleared[0].payload["actor"] == "ops@example.com"
        assert cleared[0].payload["reason"] == "verified"

    def test_login_failures_before_unlock_no_longer_count(self, app):
        fail_at(ALICE, 0, 1, 2)
        LockoutService.force_unlock(ALICE, now=minutes(4))

        status = fail_at(ALICE, 5)
        assert not status.locked
        assert status.failure_count == 1


class TestLockoutTransitions:
    def test_unknown_identifier_is_clear(self, app):
        status = LockoutService.check_status("nobody@example.com", now=T0)
        assert status.locked is False
        assert status.state == "clear"
        assert db.session.get(LockoutRecord, "nobody@example.com") is None

    def test_failures_below_threshold_are_warning(self, app):
        fail_at(ALICE, 0, 1)
        status = LockoutService.check_status(ALICE, now=minutes(2))
        assert status.state == "warning"
        assert status.failure_count == 2
        assert not status.locked

    def test_window_slides(self, app):
        # t=0 drops out of the 10 minute window before t=12
        fail_at(ALICE, 0, 6)
        assert not fail_at(ALICE, 12).locked
        assert LockoutService.check_status(ALICE, now=minutes(12)).failure_count == 2
        assert fail_at(ALICE, 13).locked

    def test_success_resets_count(self, app):
        fail_at(ALICE, 0, 1)
        status = LockoutService.record_success(ALICE, now=minutes(2))
        assert status.failure_count == 0
        assert status.state == "clear"

        assert not fail_at(ALICE, 3).locked
        assert LockoutService.check_status(ALICE, now=minutes(3)).failure_count == 1

    def test_success_does_not_clear_active_lock(self, app):
        fail_at(ALICE, 0, 1, 2)
        status = LockoutService.record_success(ALICE, now=minutes(3))
        assert status.locked
        assert status.failure_count == 0

        status = LockoutService.check_status(ALICE, now=minutes(3))
        assert status.locked
        assert status.failure_count == 0
        assert db.session.get(LockoutRecord, ALICE).failure_count == 0

    def test_success_for_unknown_identifier_creates_no_record(self, app):
        LockoutService.record_success("new@example.com", now=T0)
        assert db.session.get(LockoutRecord, "new@example.com") is None
        assert len(events_of("LOGIN_SUCCESS")) == 1

    def test_force_unlock_when_not_locked_is_noop(self, app):
        fail_at(ALICE, 0)
        status = LockoutService.force_unlock(ALICE, now=minutes(1))
        assert status.locked is False
        assert events_of("LOCKOUT_CLEARED") == []

        status = LockoutService.force_unlock("ghost@example.com", now=minutes(1))
        assert status.locked is False
        assert events_of("LOCKOUT_CLEARED") == []

    def test_invalid_identifier(self, app):
        with pytest.raises(ValidationError):
            LockoutService.record_failure("   ", now=T0)
        with pytest.raises(ValidationError):
            LockoutService.check_status("x" * 300, now=T0)


class TestExpiryAndEscalation:
    def test_expiry_emits_single_cleared_event(self, app):
        locked = fail_at(ALICE, 0, 1, 2)

        status = LockoutService.check_status(ALICE, now=locked.locked_until)
        assert status.locked is False
        assert status.failure_count == 0
        LockoutService.check_status(ALICE, now=locked.locked_until)
        LockoutService.check_status(ALICE, now=minutes(30))

        cleared = events_of("LOCKOUT_CLEARED")
        assert len(cleared) == 1
        assert cleared[0].payload["forced"] is False
        assert cleared[0].payload["reason"] == "expired"

    def test_expiry_logs_cleared_once(self, app, monkeypatch):
        logged = []
        monkeypatch.setattr(
            "folioapi.services.lockout_service.log_lockout_event",
            lambda identifier, locked, details=None: logged.append(locked),
        )
        locked = fail_at(ALICE, 0, 1, 2)
        assert logged == [True]

        LockoutService.check_status(ALICE, now=locked.locked_until)
        LockoutService.check_status(ALICE, now=locked.locked_until)
        assert logged == [True, False]

    def test_expiry_by_another_writer_is_not_logged(self, app, monkeypatch):
        locked = fail_at(ALICE, 0, 1, 2)
        logged = []
        monkeypatch.setattr(
            "folioapi.services.lockout_service.log_lockout_event",
            lambda identifier, locked, details=None: logged.append(locked),
        )
        # The row lock sees a record some other writer already cleared
        monkeypatch.setattr(
            LockoutService,
            "_expire_if_due",
            staticmethod(lambda record, now, events: False),
        )

        status = LockoutService.check_status(ALICE, now=locked.locked_until)
        assert status.locked is False
        assert logged == []
        assert events_of("LOCKOUT_CLEARED") == []

    def test_still_locked_just_before_expiry(self, app):
        locked = fail_at(ALICE, 0, 1, 2)
        almost = locked.locked_until - datetime.timedelta(seconds=1)
        status = LockoutService.check_status(ALICE, now=almost)
        assert status.locked
        assert status.retry_after_seconds == 1

    def test_repeat_lock_lasts_longer_up_to_cap(self, app):
        durations = []
        start = 0
        for _ in range(4):
            locked = fail_at(ALICE, start, start + 1, start + 2)
            assert locked.locked
            durations.append(locked.locked_until - minutes(start + 2))
            LockoutService.check_status(ALICE, now=locked.locked_until)
            start = int((locked.locked_until - T0).total_seconds() // 60) + 1

        assert durations == [
            datetime.timedelta(minutes=15),
            datetime.timedelta(minutes=30),
            datetime.timedelta(hours=1),
            datetime.timedelta(hours=1),
        ]
        assert len(events_of("LOCKOUT_CLEARED")) == 4

    def test_escalation_resets_after_quiet_period(self, app):
        locked = fail_at(ALICE, 0, 1, 2)
        LockoutService.check_status(ALICE, now=locked.locked_until)

        # Two days later the previous lock no longer counts as a repeat offense
        later = 2 * 24 * 60
        relocked = fail_at(ALICE, later, later + 1, later + 2)
        assert relocked.locked_until - minutes(later + 2) == datetime.timedelta(
            minutes=15
        )

    def test_forced_unlock_keeps_escalation_unless_reset(self, app):
        fail_at(ALICE, 0, 1, 2)
        LockoutService.force_unlock(ALICE, now=minutes(3))
        relocked = fail_at(ALICE, 4, 5, 6)
        assert relocked.locked_until - minutes(6) == datetime.timedelta(minutes=30)

        LockoutService.force_unlock(ALICE, reset_escalation=True, now=minutes(7))
        relocked = fail_at(ALICE, 8, 9, 10)
        assert relocked.locked_until - minutes(10) == datetime.timedelta(minutes=15)


class TestFailClosed:
    def test_storage_error_reports_locked(self, app):
        fail_at(ALICE, 0)
        db.session.execute(text("DROP TABLE lockouts"))
        db.session.commit()

        status = LockoutService.check_status(ALICE, now=minutes(1))

        assert status.locked is True
        assert status.fail_closed is True
        assert status.state == "unknown"

    def test_timeout_reports_locked(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "STORAGE_TIMEOUT_SECONDS", 0.1)
        with identifier_locks.hold(ALICE, 1):
            status = LockoutService.check_status(ALICE, now=T0)

        assert status.locked is True
        assert status.fail_closed is True


class TestAtomicity:
    def test_audit_failure_rolls_back_lock(self, app, monkeypatch):
        fail_at(ALICE, 0, 1)

        def broken_append(*args, **kwargs):
            raise AuditWriteFailure("audit store unavailable")

        monkeypatch.setattr(AuditService, "append", broken_append)
        with pytest.warns(TrackingDegraded), pytest.raises(AuditWriteFailure):
            LockoutService.record_failure(ALICE, now=minutes(2))
        monkeypatch.undo()

        record = db.session.get(LockoutRecord, ALICE)
        assert record.locked_until is None
        assert events_of("LOCKOUT_APPLIED") == []

    def test_untracked_failure_still_counts(self, app, monkeypatch):
        fail_at(ALICE, 0, 1)

        def untracked(*args, **kwargs):
            return None

        monkeypatch.setattr(
            "folioapi.services.lockout_service.AttemptService.record_attempt",
            untracked,
        )
        status = LockoutService.record_failure(ALICE, now=minutes(2))
        assert status.locked
        assert status.failure_count == 3


class TestConcurrentFailures:
    def test_concurrent_failures_add_up(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "STORAGE_TIMEOUT_SECONDS", 30)
        identifier = "bob@example.com"
        errors = []

        def worker():
            try:
                with app.app_context():
                    LockoutService.record_failure(identifier, now=T0)
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        db.session.expire_all()
        attempts = db.session.query(AuthAttempt).filter_by(identifier=identifier)
        assert attempts.count() == 6
        assert len(events_of("LOCKOUT_APPLIED")) == 1
        status = LockoutService.check_status(
            identifier, now=T0 + datetime.timedelta(seconds=1)
        )
        assert status.locked
        assert status.failure_count == 6
        assert AuditService.verify_chain().valid
