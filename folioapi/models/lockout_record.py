"""LOCKOUT RECORD MODEL"""

from __future__ import annotations

from folioapi import db
from folioapi.utils.durations import isoformat


class LockoutRecord(db.Model):
    """Per-identifier lockout state. Reset in place, never deleted."""

    __tablename__ = "lockouts"

    identifier = db.Column(db.String(255), primary_key=True)
    failure_count = db.Column(db.Integer(), nullable=False, default=0)
    window_start = db.Column(db.DateTime(), nullable=True)
    locked_until = db.Column(db.DateTime(), nullable=True, index=True)
    last_failure_at = db.Column(db.DateTime(), nullable=True)
    # Escalation bookkeeping
    offense_level = db.Column(db.Integer(), nullable=False, default=0)
    last_locked_duration_seconds = db.Column(db.Integer(), nullable=True)
    last_unlocked_at = db.Column(db.DateTime(), nullable=True)
    # Failures before this instant no longer count
    reset_at = db.Column(db.DateTime(), nullable=True)
    version = db.Column(db.Integer(), nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, identifier):
        self.identifier = identifier
        self.failure_count = 0
        self.offense_level = 0

    def __repr__(self):
        return f"<LockoutRecord {self.identifier!r} count={self.failure_count}>"

    def is_locked(self, now):
        return self.locked_until is not None and now < self.locked_until

    def serialize(self) -> dict[str, object]:
        return {
            "identifier": self.identifier,
            "failure_count": self.failure_count,
            "window_start": isoformat(self.window_start),
            "locked_until": isoformat(self.locked_until),
            "last_failure_at": isoformat(self.last_failure_at),
            "offense_level": self.offense_level,
            "last_locked_duration_seconds": self.last_locked_duration_seconds,
            "last_unlocked_at": isoformat(self.last_unlocked_at),
        }
