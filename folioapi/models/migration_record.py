"""SCHEMA MIGRATION MODELS"""

from __future__ import annotations

from folioapi import db
from folioapi.utils.durations import isoformat, utcnow

MIGRATION_STATUSES = ("pending", "applied", "failed")


class MigrationRecord(db.Model):
    """Outcome of applying one catalog migration. Never deleted."""

    __tablename__ = "schema_migrations"

    version = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    checksum = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(10), nullable=False, default="pending")
    attempted_at = db.Column(db.DateTime(), nullable=True)
    applied_at = db.Column(db.DateTime(), nullable=True)
    duration_ms = db.Column(db.Integer(), nullable=True)
    error_message = db.Column(db.Text(), nullable=True)

    def __init__(self, version, name, checksum, status="pending"):
        if status not in MIGRATION_STATUSES:
            raise ValueError(f"Unknown migration status: {status!r}")
        self.version = version
        self.name = name
        self.checksum = checksum
        self.status = status
        self.attempted_at = utcnow()

    def __repr__(self):
        return f"<MigrationRecord {self.version} {self.status}>"

    def serialize(self) -> dict[str, object]:
        return {
            "version": self.version,
            "name": self.name,
            "checksum": self.checksum,
            "status": self.status,
            "attempted_at": isoformat(self.attempted_at),
            "applied_at": isoformat(self.applied_at),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
        }


class MigrationLock(db.Model):
    """Single-owner gate for migration runs; held while a run is in progress."""

    __tablename__ = "migration_lock"

    name = db.Column(db.String(64), primary_key=True)
    owner = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime(), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(), nullable=False)
    halt_requested = db.Column(db.Boolean(), nullable=False, default=False)

    def __init__(self, name, owner, acquired_at, expires_at):
        self.name = name
        self.owner = owner
        self.acquired_at = acquired_at
        self.expires_at = expires_at
        self.halt_requested = False

    def serialize(self) -> dict[str, object]:
        return {
            "owner": self.owner,
            "acquired_at": isoformat(self.acquired_at),
            "expires_at": isoformat(self.expires_at),
            "halt_requested": self.halt_requested,
        }
