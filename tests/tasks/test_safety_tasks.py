"""
Tests for the periodic audit, retention and migration tasks.
"""

import datetime
from unittest.mock import patch

from sqlalchemy import text

from folioapi import db
from folioapi.models import AuthAttempt
from folioapi.services import AttemptService, AuditService
from folioapi.tasks.attempt_cleanup import cleanup_old_auth_attempts
from folioapi.tasks.audit_integrity import verify_audit_chains
from folioapi.tasks.migrations import run_pending_migrations
from folioapi.utils.durations import utcnow


class TestAuditIntegrityTask:
    def test_intact_chains(self, app):
        AuditService.record("LOGIN_FAILURE", {"identifier": "a@example.com"})
        AuditService.record("LOGIN_FAILURE", {"identifier": "b@example.com"})

        result = verify_audit_chains.apply().result

        assert result["status"] == "success"
        assert result["partitions"][0]["checked"] == 2

    @patch("folioapi.tasks.audit_integrity.rollbar.report_message")
    def test_corruption_is_reported(self, mock_report_message, app):
        for i in range(3):
            AuditService.record("LOGIN_FAILURE", {"identifier": f"u{i}@example.com"})
        db.session.execute(
            text("UPDATE audit_log SET payload = '{}' WHERE sequence = 2")
        )
        db.session.commit()

        result = verify_audit_chains.apply().result

        assert result["status"] == "corrupt"
        assert result["partitions"][0]["corrupt_at"] == 2
        messages = [
            call.kwargs.get("message") or call.args[0]
            for call in mock_report_message.call_args_list
        ]
        assert "Audit chain global corrupt at #2" in messages


class TestAttemptCleanupTask:
    def test_removes_expired_attempts(self, app):
        now = utcnow()
        AttemptService.record_attempt(
            "a@example.com", "failure", occurred_at=now - datetime.timedelta(days=2)
        )
        AttemptService.record_attempt("a@example.com", "failure", occurred_at=now)

        result = cleanup_old_auth_attempts.apply(kwargs={"retention": "1d"}).result

        assert result == {"status": "success", "removed_count": 1}
        assert db.session.query(AuthAttempt).count() == 1


class TestMigrationTask:
    def test_runs_catalog(self, app):
        result = run_pending_migrations.apply().result
        assert result["success"] is True
        assert result["applied"] == ["0001", "0002", "0003"]
