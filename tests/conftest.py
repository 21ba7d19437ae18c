"""
Test configuration and fixtures for the Folio API tests
"""

import os
import sys
import tempfile
from unittest.mock import patch

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Set environment variables for testing before importing the app
os.environ["ENVIRONMENT"] = "test"
os.environ["TESTING"] = "true"
os.environ["RATE_LIMITING_ENABLED"] = "false"

# Set minimal required environment variables for testing if not already set
if not os.environ.get("JWT_SECRET_KEY"):
    os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-for-ci"
if not os.environ.get("SECRET_KEY"):
    os.environ["SECRET_KEY"] = "test-secret-key-for-ci"

# Use environment DATABASE_URL if available (for CI), otherwise use SQLite
if not os.environ.get("DATABASE_URL"):
    _db_fd, _db_path = tempfile.mkstemp(suffix=".db")
    os.close(_db_fd)
    os.environ["DATABASE_URL"] = f"sqlite:///{_db_path}"

from flask_jwt_extended import create_access_token  # noqa: E402

from folioapi import app as flask_app  # noqa: E402
from folioapi import db, limiter  # noqa: E402
from folioapi.services import UserService  # noqa: E402

USER_TEST_PASSWORD = "UserPass123!"
ADMIN_TEST_PASSWORD = "AdminPass123!"
SUPERADMIN_TEST_PASSWORD = "SuperAdmin1!"

# Lock on the third failure inside ten minutes
TEST_LOCKOUT = {
    "THRESHOLD": 3,
    "WINDOW": "10m",
    "BASE_DURATION": "15m",
    "MAX_DURATION": "1h",
    "REPEAT_OFFENSE_WINDOW": "24h",
    "TRACK_IP": False,
}


@pytest.fixture(scope="function")
def app():
    """Create application for testing with a fresh schema"""
    test_config = {
        "TESTING": True,
        "LOCKOUT": dict(TEST_LOCKOUT),
        "AUDIT": {"PARTITION_KEY": "global"},
        "RATE_LIMITING": {"ENABLED": False, "STORAGE_URI": "memory://"},
    }

    app = flask_app

    with app.app_context():
        original_config = {key: app.config.get(key) for key in test_config}
        app.config.update(test_config)

        original_limiter_enabled = limiter.enabled
        limiter.enabled = False

        db.drop_all()
        db.create_all()
        try:
            yield app
        finally:
            db.session.remove()
            db.drop_all()
            limiter.enabled = original_limiter_enabled
            app.config.update(original_config)


@pytest.fixture(autouse=True)
def no_rollbar():
    """Keep error reporting offline during tests"""
    with (
        patch("rollbar.report_exc_info") as report_exc_info,
        patch("rollbar.report_message"),
    ):
        yield report_exc_info


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()


def _create_user(email, password, name, role):
    user = UserService.create_user(
        {"email": email, "password": password, "name": name, "role": role}
    )
    db.session.refresh(user)
    return user


@pytest.fixture
def regular_user(app):
    return _create_user("user@test.com", USER_TEST_PASSWORD, "Regular User", "USER")


@pytest.fixture
def admin_user(app):
    return _create_user("admin@test.com", ADMIN_TEST_PASSWORD, "Admin User", "ADMIN")


@pytest.fixture
def superadmin_user(app):
    return _create_user(
        "superadmin@test.com", SUPERADMIN_TEST_PASSWORD, "Super Admin", "SUPERADMIN"
    )


@pytest.fixture
def auth_headers_user(regular_user):
    """Get authorization headers for regular user"""
    token = create_access_token(identity=str(regular_user.id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_admin(admin_user):
    """Get authorization headers for admin"""
    token = create_access_token(identity=str(admin_user.id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_superadmin(superadmin_user):
    """Get authorization headers for superadmin user"""
    token = create_access_token(identity=str(superadmin_user.id))
    return {"Authorization": f"Bearer {token}"}
