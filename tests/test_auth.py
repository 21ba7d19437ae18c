"""
Tests for the login endpoint and its lockout gate
"""

from sqlalchemy import text

from folioapi import db
from folioapi.models import AuditEvent, AuthAttempt

# Must match conftest.py
USER_TEST_PASSWORD = "UserPass123!"


def login(client, email, password):
    return client.post("/auth", json={"email": email, "password": password})


class TestAuth:
    """Test authentication functionality"""

    def test_successful_login(self, client, regular_user):
        response = login(client, "user@test.com", USER_TEST_PASSWORD)

        assert response.status_code == 200
        data = response.json
        assert "access_token" in data
        assert data["user_id"] == str(regular_user.id)

        attempt = db.session.query(AuthAttempt).one()
        assert attempt.outcome == "success"
        assert attempt.identifier == "user@test.com"

    def test_email_is_case_insensitive(self, client, regular_user):
        response = login(client, "User@Test.com", USER_TEST_PASSWORD)
        assert response.status_code == 200

    def test_invalid_credentials(self, client, regular_user):
        response = login(client, "user@test.com", "wrongpassword")

        assert response.status_code == 401
        assert response.json["locked"] is False
        assert db.session.query(AuthAttempt).one().outcome == "failure"

    def test_missing_credentials(self, client):
        assert client.post("/auth", json={"email": "user@test.com"}).status_code == 400
        assert client.post("/auth", json={"password": "secret"}).status_code == 400
        assert client.post("/auth", json={}).status_code == 400

    def test_nonexistent_user_is_tracked(self, client):
        response = login(client, "nobody@test.com", "password123")
        assert response.status_code == 401
        assert db.session.query(AuthAttempt).one().identifier == "nobody@test.com"


class TestLoginLockout:
    def test_third_failure_locks_account(self, client, regular_user):
        for _ in range(2):
            assert login(client, "user@test.com", "wrong").json["locked"] is False

        response = login(client, "user@test.com", "wrong")

        assert response.status_code == 401
        assert response.json["locked"] is True
        assert 0 < response.json["retry_after"] <= 15 * 60

    def test_locked_account_rejects_correct_password(self, client, regular_user):
        for _ in range(3):
            login(client, "user@test.com", "wrong")

        response = login(client, "user@test.com", USER_TEST_PASSWORD)

        assert response.status_code == 401
        assert response.json["locked"] is True
        assert "access_token" not in response.json
        assert 0 < int(response.headers["Retry-After"]) <= 15 * 60
        # The blocked attempt is still part of the history
        assert db.session.query(AuthAttempt).count() == 4

    def test_success_resets_failures(self, client, regular_user):
        for _ in range(2):
            login(client, "user@test.com", "wrong")
        assert login(client, "user@test.com", USER_TEST_PASSWORD).status_code == 200

        for _ in range(2):
            response = login(client, "user@test.com", "wrong")
        assert response.json["locked"] is False

    def test_ip_is_locked_across_accounts(self, app, client, regular_user):
        app.config["LOCKOUT"]["TRACK_IP"] = True

        for email in ("a@test.com", "b@test.com", "c@test.com"):
            login(client, email, "guess")

        response = login(client, "user@test.com", USER_TEST_PASSWORD)
        assert response.status_code == 401
        assert response.json["locked"] is True
        applied = db.session.query(AuditEvent).filter_by(event_type="LOCKOUT_APPLIED")
        assert applied.one().payload["identifier"] == "ip:127.0.0.1"

    def test_unavailable_lockout_state_fails_closed(self, client, regular_user):
        db.session.execute(text("DROP TABLE lockouts"))
        db.session.commit()

        response = login(client, "user@test.com", USER_TEST_PASSWORD)

        assert response.status_code == 401
        assert response.json["locked"] is True
        assert "access_token" not in response.json


def test_health_reports_migration_state(client):
    response = client.get("/api-health")

    assert response.status_code == 200
    assert response.json["database"] == "healthy"
    assert response.json["migrations"]["pending"] == 3
    assert response.json["migrations"]["last_applied"] is None
    assert response.headers["X-Content-Type-Options"] == "nosniff"
