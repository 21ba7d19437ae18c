"""USER MODEL"""

import logging
import uuid

from werkzeug.security import check_password_hash, generate_password_hash

from folioapi import db
from folioapi.models import GUID
from folioapi.utils.durations import isoformat, utcnow

db.GUID = GUID

logger = logging.getLogger(__name__)

ROLES = ("USER", "ADMIN", "SUPERADMIN")


class User(db.Model):
    """Back-office account. Only used to authenticate administrative callers."""

    __tablename__ = "user"

    id = db.Column(
        db.GUID(),
        default=lambda: str(uuid.uuid4()),
        primary_key=True,
        autoincrement=False,
    )
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    password = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(10), nullable=False, default="USER")
    created_at = db.Column(db.DateTime(), default=utcnow)
    last_login_at = db.Column(db.DateTime(), nullable=True)

    def __init__(self, email, password, name, role="USER"):
        self.email = email
        self.password = self.set_password(password)
        self.role = role if role in ROLES else "USER"
        self.name = name

    def __repr__(self):
        return f"<User {self.email!r}>"

    def serialize(self):
        """Return object data in easily serializeable format"""
        return {
            "id": str(self.id) if self.id else None,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "created_at": isoformat(self.created_at),
            "last_login_at": isoformat(self.last_login_at),
        }

    def set_password(self, password):
        return generate_password_hash(password)

    def check_password(self, password):
        """Check if provided password matches stored hash"""
        if not self.password:
            logger.warning(f"User {self.email} has no password hash stored")
            return False

        if not password:
            logger.debug("Empty password provided for authentication")
            return False

        try:
            return check_password_hash(self.password, password)
        except ValueError as e:
            logger.error(f"Invalid password hash for user {self.email}: {e}")
            return False
