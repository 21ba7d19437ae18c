"""AUTH ATTEMPT MODEL"""

from __future__ import annotations

import uuid

from sqlalchemy import event

from folioapi import db
from folioapi.models import GUID
from folioapi.utils.durations import isoformat, utcnow

db.GUID = GUID

OUTCOMES = ("success", "failure")


class AuthAttempt(db.Model):
    """One reported login attempt. Written once, never updated."""

    __tablename__ = "auth_attempts"
    __table_args__ = (
        db.Index(
            "ix_auth_attempts_identifier_occurred_at", "identifier", "occurred_at"
        ),
    )

    id = db.Column(
        db.GUID(),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        autoincrement=False,
    )
    identifier = db.Column(db.String(255), nullable=False)
    occurred_at = db.Column(db.DateTime(), nullable=False, default=utcnow, index=True)
    outcome = db.Column(db.String(10), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    context = db.Column("metadata", db.JSON(), nullable=True)

    def __init__(
        self,
        identifier,
        outcome,
        occurred_at=None,
        ip_address=None,
        user_agent=None,
        context=None,
    ):
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown attempt outcome: {outcome!r}")
        self.id = str(uuid.uuid4())
        self.identifier = identifier
        self.outcome = outcome
        self.occurred_at = occurred_at or utcnow()
        self.ip_address = ip_address
        self.user_agent = (user_agent or "")[:255] or None
        self.context = context or {}

    def __repr__(self):
        return f"<AuthAttempt {self.identifier!r} {self.outcome}>"

    def serialize(self) -> dict[str, object]:
        return {
            "id": str(self.id) if self.id else None,
            "identifier": self.identifier,
            "occurred_at": isoformat(self.occurred_at),
            "outcome": self.outcome,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.context or {},
        }


@event.listens_for(AuthAttempt, "before_update")
def _refuse_attempt_update(mapper, connection, target):
    raise ValueError("Auth attempts are immutable once recorded")
