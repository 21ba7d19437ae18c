"""USER SERVICE"""

import logging

import rollbar

from folioapi import db
from folioapi.config import SETTINGS
from folioapi.errors import ValidationError
from folioapi.models import User
from folioapi.utils.durations import utcnow
from folioapi.utils.security_events import log_authentication_event

ROLES = SETTINGS.get("ROLES")

logger = logging.getLogger()


class UserService:
    """User Class"""

    @staticmethod
    def create_user(user):
        logger.info("[SERVICE]: Creating user")
        email = (user.get("email") or "").strip().lower()
        password = user.get("password")
        role = user.get("role", "USER")
        name = user.get("name", "notset")
        if not email or not password:
            raise ValidationError("Email and password are required")
        if role not in ROLES:
            role = "USER"
        if User.query.filter_by(email=email).first():
            raise ValidationError(f"User with email {email} already exists", "email")

        user = User(email=email, password=password, name=name, role=role)
        try:
            logger.info("[DB]: ADD")
            db.session.add(user)
            db.session.commit()
        except Exception as error:
            db.session.rollback()
            rollbar.report_exc_info()
            raise error
        return user

    @staticmethod
    def authenticate_user(email, password):
        """Verify credentials. Returns the user, or None on any mismatch."""
        email = (email or "").strip().lower()
        logger.info(f"[AUTH]: Authentication attempt for {email}")
        user = User.query.filter_by(email=email).first()

        if not user:
            logger.warning(f"[AUTH]: Failed login - user not found: {email}")
            log_authentication_event(False, email, "user_not_found")
            return None

        if not user.check_password(password):
            logger.warning(f"[AUTH]: Failed login - invalid password: {email}")
            log_authentication_event(False, email, "invalid_password")
            return None

        user.last_login_at = utcnow()
        db.session.commit()
        log_authentication_event(True, email)
        return user
