"""AUDIT SERVICE"""

import json
import logging

from flask import current_app
import rollbar
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from folioapi import db
from folioapi.config import SETTINGS
from folioapi.errors import AuditWriteFailure, ValidationError
from folioapi.models import AuditChainHead, AuditEvent
from folioapi.models.audit_event import EVENT_TYPES, GENESIS_HASH, canonical_json
from folioapi.utils.database import retry_db_operation, storage_timeout_guard
from folioapi.utils.durations import to_naive_utc, utcnow
from folioapi.utils.security_events import log_security_event

logger = logging.getLogger(__name__)

GLOBAL_PARTITION = "global"
PARTITION_STRATEGIES = ("global", "per-identifier")
# Concurrent appenders on the same partition lose the head race and retry
APPEND_RETRIES = 5


class AuditConfig:
    @staticmethod
    def _get_config():
        try:
            return current_app.config.get("AUDIT") or SETTINGS.get("AUDIT", {})
        except RuntimeError:
            return SETTINGS.get("AUDIT", {})

    @classmethod
    def partition_key(cls):
        strategy = cls._get_config().get("PARTITION_KEY", GLOBAL_PARTITION)
        if strategy not in PARTITION_STRATEGIES:
            logger.warning(
                f"[AUDIT]: Unknown partition strategy {strategy!r}, using global"
            )
            return GLOBAL_PARTITION
        return strategy


class ChainVerification:
    """Result of walking a partition's hash chain."""

    def __init__(self, partition, valid, checked, corrupt_at=None, reason=None):
        self.partition = partition
        self.valid = valid
        self.checked = checked
        self.corrupt_at = corrupt_at
        self.reason = reason

    def __repr__(self):
        return f"<ChainVerification {self.partition} valid={self.valid}>"

    def serialize(self):
        return {
            "partition": self.partition,
            "valid": self.valid,
            "checked": self.checked,
            "corrupt_at": self.corrupt_at,
            "reason": self.reason,
        }


def _normalize_payload(payload):
    """Round-trip through canonical JSON so the hashed value equals the stored one."""
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Audit payload must be an object", field="payload")
    return json.loads(canonical_json(payload))


class AuditService:
    """Append-only, hash-chained audit log.

    ``append`` joins the caller's transaction: it flushes the event and moves
    the partition head but never commits, so the business change and its
    event become durable together or not at all.
    """

    @staticmethod
    def partition_for(identifier=None):
        if identifier and AuditConfig.partition_key() == "per-identifier":
            return f"identifier:{identifier}"
        return GLOBAL_PARTITION

    @staticmethod
    def append(event_type, payload=None, identifier=None, occurred_at=None):
        """Stage an event in the current transaction.

        Raises:
            ValidationError: unknown event type or malformed payload.
            IntegrityError, StaleDataError: another writer advanced the partition
                head first; the caller rolls back and retries its unit of work.
            AuditWriteFailure: any other storage failure.
        """
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown audit event type: {event_type}")

        payload = _normalize_payload(payload)
        partition = AuditService.partition_for(identifier)
        occurred_at = to_naive_utc(occurred_at) if occurred_at else utcnow()

        try:
            with storage_timeout_guard("audit append"):
                head = (
                    db.session.query(AuditChainHead)
                    .filter_by(partition=partition)
                    .with_for_update()
                    .one_or_none()
                )
                if head is None:
                    head = AuditChainHead(partition)
                    db.session.add(head)

                audit_event = AuditEvent(
                    partition=partition,
                    sequence=head.last_sequence + 1,
                    event_type=event_type,
                    payload=payload,
                    occurred_at=occurred_at,
                    previous_hash=head.last_hash or GENESIS_HASH,
                )
                head.last_sequence = audit_event.sequence
                head.last_hash = audit_event.current_hash
                db.session.add(audit_event)
                db.session.flush()
        except (IntegrityError, StaleDataError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"[AUDIT]: Failed to append {event_type} to {partition}: {e}")
            log_security_event(
                "AUDIT_WRITE_FAILURE",
                details={"event_type": event_type, "partition": partition},
                level="error",
            )
            rollbar.report_exc_info()
            message = f"Could not persist {event_type} audit event"
            raise AuditWriteFailure(message) from e

        logger.debug(
            f"[AUDIT]: Staged {event_type} as {partition}#{audit_event.sequence}"
        )
        return audit_event

    @staticmethod
    def record(event_type, payload=None, identifier=None, occurred_at=None):
        """Append a standalone event and commit it."""
        last_error = None
        for _attempt in range(APPEND_RETRIES):
            try:
                audit_event = AuditService.append(
                    event_type, payload, identifier=identifier, occurred_at=occurred_at
                )
                db.session.commit()
                return audit_event
            except (IntegrityError, StaleDataError) as e:
                db.session.rollback()
                last_error = e
                logger.info(f"[AUDIT]: Partition head moved, retrying {event_type}")
            except Exception:
                db.session.rollback()
                raise
        raise AuditWriteFailure(
            f"Could not persist {event_type} audit event"
        ) from last_error

    @staticmethod
    @retry_db_operation(max_retries=2, backoff_seconds=0.5)
    def list_events(
        from_sequence=None,
        to_sequence=None,
        partition=GLOBAL_PARTITION,
        event_type=None,
        limit=100,
    ):
        logger.info(f"[SERVICE]: Listing audit events for {partition}")
        query = db.session.query(AuditEvent).filter(AuditEvent.partition == partition)
        if from_sequence is not None:
            query = query.filter(AuditEvent.sequence >= from_sequence)
        if to_sequence is not None:
            query = query.filter(AuditEvent.sequence <= to_sequence)
        if event_type:
            query = query.filter(AuditEvent.event_type == event_type)
        return query.order_by(AuditEvent.sequence.asc()).limit(limit).all()

    @staticmethod
    def list_partitions():
        rows = db.session.query(AuditChainHead).order_by(AuditChainHead.partition)
        return [head.serialize() for head in rows]

    @staticmethod
    @retry_db_operation(max_retries=2, backoff_seconds=0.5)
    def verify_chain(from_sequence=None, to_sequence=None, partition=GLOBAL_PARTITION):
        """Recompute hashes and links over a sequence range of one partition.

        Read-only. Reports the first sequence number whose content, link to its
        predecessor, or position does not check out.
        """
        if from_sequence is not None and from_sequence < 1:
            raise ValidationError("from must be >= 1", field="from")
        if (
            from_sequence is not None
            and to_sequence is not None
            and from_sequence > to_sequence
        ):
            raise ValidationError("from must not be greater than to", field="from")

        start = from_sequence or 1
        logger.info(f"[AUDIT]: Verifying {partition} from #{start} to #{to_sequence}")

        expected_previous = GENESIS_HASH
        if start > 1:
            predecessor = db.session.get(AuditEvent, (partition, start - 1))
            if predecessor is None:
                head = db.session.get(AuditChainHead, partition)
                if head is None or head.last_sequence < start - 1:
                    # Range lies past the end of the chain
                    return ChainVerification(partition, valid=True, checked=0)
                return AuditService._corrupt(partition, 0, start - 1, "missing event")
            expected_previous = predecessor.current_hash

        query = db.session.query(AuditEvent).filter(
            AuditEvent.partition == partition, AuditEvent.sequence >= start
        )
        if to_sequence is not None:
            query = query.filter(AuditEvent.sequence <= to_sequence)

        expected_sequence = start
        checked = 0
        for audit_event in query.order_by(AuditEvent.sequence.asc()).yield_per(500):
            if audit_event.sequence != expected_sequence:
                return AuditService._corrupt(
                    partition, checked, expected_sequence, "missing event"
                )
            if audit_event.previous_hash != expected_previous:
                return AuditService._corrupt(
                    partition, checked, audit_event.sequence, "broken link"
                )
            if audit_event.compute_hash() != audit_event.current_hash:
                return AuditService._corrupt(
                    partition, checked, audit_event.sequence, "hash mismatch"
                )
            expected_previous = audit_event.current_hash
            expected_sequence += 1
            checked += 1

        head = db.session.get(AuditChainHead, partition)
        if head is not None:
            last = head.last_sequence
            if to_sequence is not None:
                last = min(last, to_sequence)
            if last >= expected_sequence:
                return AuditService._corrupt(
                    partition, checked, expected_sequence, "missing event"
                )
            if to_sequence is None and checked and head.last_hash != expected_previous:
                return AuditService._corrupt(
                    partition, checked, expected_sequence - 1, "head mismatch"
                )

        return ChainVerification(partition, valid=True, checked=checked)

    @staticmethod
    def _corrupt(partition, checked, sequence, reason):
        logger.error(f"[AUDIT]: Chain {partition} corrupt at #{sequence}: {reason}")
        log_security_event(
            "AUDIT_CHAIN_CORRUPT",
            details={"partition": partition, "sequence": sequence, "reason": reason},
            level="critical",
        )
        return ChainVerification(
            partition, valid=False, checked=checked, corrupt_at=sequence, reason=reason
        )
