"""AUDIT EVENT MODELS"""

from __future__ import annotations

import hashlib
import json

from sqlalchemy import event

from folioapi import db
from folioapi.utils.durations import isoformat

GENESIS_HASH = "0" * 64

EVENT_TYPES = (
    "LOGIN_FAILURE",
    "LOGIN_SUCCESS",
    "LOCKOUT_APPLIED",
    "LOCKOUT_CLEARED",
    "MIGRATION_APPLIED",
    "MIGRATION_FAILED",
)


def canonical_json(value) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_event_hash(
    partition, sequence, event_type, payload, occurred_at, previous_hash
) -> str:
    """Hash of an event's content chained to its predecessor's hash."""
    body = canonical_json(
        {
            "partition": partition,
            "sequence": sequence,
            "event_type": event_type,
            "payload": payload,
            "occurred_at": isoformat(occurred_at),
            "previous_hash": previous_hash,
        }
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class AuditEvent(db.Model):
    """Append-only, hash-chained audit entry."""

    __tablename__ = "audit_log"

    partition = db.Column(db.String(300), primary_key=True)
    sequence = db.Column(db.BigInteger(), primary_key=True, autoincrement=False)
    event_type = db.Column(db.String(40), nullable=False, index=True)
    payload = db.Column(db.JSON(), nullable=False)
    occurred_at = db.Column(db.DateTime(), nullable=False)
    previous_hash = db.Column(db.String(64), nullable=False)
    current_hash = db.Column(db.String(64), nullable=False)

    def __init__(
        self, partition, sequence, event_type, payload, occurred_at, previous_hash
    ):
        self.partition = partition
        self.sequence = sequence
        self.event_type = event_type
        self.payload = payload
        self.occurred_at = occurred_at
        self.previous_hash = previous_hash
        self.current_hash = self.compute_hash()

    def __repr__(self):
        return f"<AuditEvent {self.partition}#{self.sequence} {self.event_type}>"

    def compute_hash(self):
        return compute_event_hash(
            self.partition,
            self.sequence,
            self.event_type,
            self.payload,
            self.occurred_at,
            self.previous_hash,
        )

    def serialize(self) -> dict[str, object]:
        return {
            "partition": self.partition,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "payload": self.payload,
            "occurred_at": isoformat(self.occurred_at),
            "previous_hash": self.previous_hash,
            "current_hash": self.current_hash,
        }


class AuditChainHead(db.Model):
    """Last sequence and hash of a partition; the serialization point for appends."""

    __tablename__ = "audit_chain_heads"

    partition = db.Column(db.String(300), primary_key=True)
    last_sequence = db.Column(db.BigInteger(), nullable=False, default=0)
    last_hash = db.Column(db.String(64), nullable=False, default=GENESIS_HASH)
    version = db.Column(db.Integer(), nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, partition):
        self.partition = partition
        self.last_sequence = 0
        self.last_hash = GENESIS_HASH

    def serialize(self) -> dict[str, object]:
        return {
            "partition": self.partition,
            "last_sequence": self.last_sequence,
            "last_hash": self.last_hash,
        }


@event.listens_for(AuditEvent, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError("Audit events are append-only")


@event.listens_for(AuditEvent, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise ValueError("Audit events are append-only")
