"""Tests for the hash-chained audit log"""

import datetime

import pytest
from sqlalchemy import text

from folioapi import db
from folioapi.errors import AuditWriteFailure, ValidationError
from folioapi.models import AuditChainHead, AuditEvent
from folioapi.models.audit_event import GENESIS_HASH, compute_event_hash
from folioapi.services import AuditService, LockoutService

T0 = datetime.datetime(2026, 1, 1, 10, 0, 0)


def record_events(count, partition_identifier=None):
    return [
        AuditService.record(
            "LOGIN_FAILURE",
            {"identifier": f"user{i}@example.com"},
            identifier=partition_identifier,
            occurred_at=T0 + datetime.timedelta(seconds=i),
        )
        for i in range(count)
    ]


def tamper(statement):
    db.session.execute(text(statement))
    db.session.commit()


class TestAppend:
    def test_sequences_are_gapless_and_linked(self, app):
        record_events(4)

        events = AuditService.list_events()
        assert [e.sequence for e in events] == [1, 2, 3, 4]
        assert events[0].previous_hash == GENESIS_HASH
        for previous, current in zip(events, events[1:]):
            assert current.previous_hash == previous.current_hash

        head = db.session.get(AuditChainHead, "global")
        assert head.last_sequence == 4
        assert head.last_hash == events[-1].current_hash

    def test_hash_covers_content(self, app):
        audit_event = record_events(1)[0]
        expected = compute_event_hash(
            "global",
            1,
            "LOGIN_FAILURE",
            {"identifier": "user0@example.com"},
            T0,
            GENESIS_HASH,
        )
        assert audit_event.current_hash == expected
        assert len(expected) == 64

    def test_unknown_event_type_is_rejected(self, app):
        with pytest.raises(ValidationError):
            AuditService.record("PASSWORD_CHANGED", {})
        assert db.session.query(AuditEvent).count() == 0

    def test_payload_must_be_an_object(self, app):
        with pytest.raises(ValidationError):
            AuditService.record("LOGIN_FAILURE", ["not", "a", "dict"])

    def test_events_cannot_be_updated(self, app):
        audit_event = record_events(1)[0]
        audit_event.event_type = "LOGIN_SUCCESS"
        with pytest.raises(ValueError):
            db.session.commit()
        db.session.rollback()

    def test_events_cannot_be_deleted(self, app):
        audit_event = record_events(1)[0]
        db.session.delete(audit_event)
        with pytest.raises(ValueError):
            db.session.commit()
        db.session.rollback()
        assert db.session.query(AuditEvent).count() == 1

    def test_storage_failure_raises_audit_write_failure(self, app):
        record_events(1)
        tamper("DROP TABLE audit_log")

        with pytest.raises(AuditWriteFailure):
            AuditService.record("LOGIN_FAILURE", {"identifier": "x@example.com"})

        head = db.session.get(AuditChainHead, "global")
        assert head.last_sequence == 1

    def test_list_events_filters(self, app):
        record_events(3)
        AuditService.record("LOGIN_SUCCESS", {"identifier": "user0@example.com"})

        assert [e.sequence for e in AuditService.list_events(from_sequence=2)] == [
            2,
            3,
            4,
        ]
        successes = AuditService.list_events(event_type="LOGIN_SUCCESS")
        assert [e.sequence for e in successes] == [4]


class TestVerifyChain:
    def test_intact_chain_is_valid(self, app):
        record_events(5)
        verification = AuditService.verify_chain()
        assert verification.valid
        assert verification.checked == 5
        assert verification.corrupt_at is None

    def test_empty_chain_is_valid(self, app):
        verification = AuditService.verify_chain()
        assert verification.valid
        assert verification.checked == 0

    def test_payload_tampering_is_located(self, app):
        record_events(5)
        tamper(
            "UPDATE audit_log SET payload = '{\"identifier\": \"mallory\"}' "
            "WHERE partition = 'global' AND sequence = 3"
        )

        verification = AuditService.verify_chain()
        assert not verification.valid
        assert verification.corrupt_at == 3
        assert verification.checked == 2
        assert verification.reason == "hash mismatch"

    def test_broken_link_is_located(self, app):
        record_events(5)
        tamper(
            f"UPDATE audit_log SET previous_hash = '{'f' * 64}' "
            "WHERE partition = 'global' AND sequence = 4"
        )

        verification = AuditService.verify_chain()
        assert verification.corrupt_at == 4
        assert verification.reason == "broken link"

    def test_deleted_event_is_located(self, app):
        record_events(5)
        tamper("DELETE FROM audit_log WHERE partition = 'global' AND sequence = 2")

        verification = AuditService.verify_chain()
        assert verification.corrupt_at == 2
        assert verification.reason == "missing event"

    def test_truncated_tail_is_detected(self, app):
        record_events(5)
        tamper("DELETE FROM audit_log WHERE partition = 'global' AND sequence = 5")

        verification = AuditService.verify_chain()
        assert not verification.valid
        assert verification.corrupt_at == 5

    def test_range_verification(self, app):
        record_events(5)
        tamper(
            "UPDATE audit_log SET payload = '{}' "
            "WHERE partition = 'global' AND sequence = 5"
        )

        verification = AuditService.verify_chain(from_sequence=2, to_sequence=4)
        assert verification.valid
        assert verification.checked == 3

        verification = AuditService.verify_chain(from_sequence=3)
        assert verification.corrupt_at == 5

    def test_missing_event_at_end_of_range(self, app):
        record_events(5)
        tamper("DELETE FROM audit_log WHERE partition = 'global' AND sequence = 4")

        verification = AuditService.verify_chain(from_sequence=1, to_sequence=4)
        assert not verification.valid
        assert verification.corrupt_at == 4
        assert verification.checked == 3

    def test_range_past_the_end_is_valid(self, app):
        record_events(2)
        verification = AuditService.verify_chain(from_sequence=10, to_sequence=20)
        assert verification.valid
        assert verification.checked == 0

    def test_invalid_range(self, app):
        with pytest.raises(ValidationError):
            AuditService.verify_chain(from_sequence=5, to_sequence=2)
        with pytest.raises(ValidationError):
            AuditService.verify_chain(from_sequence=0)


class TestPartitions:
    def test_per_identifier_partitions_have_own_sequences(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "AUDIT", {"PARTITION_KEY": "per-identifier"})

        LockoutService.record_failure("a@example.com", now=T0)
        LockoutService.record_failure("b@example.com", now=T0)
        LockoutService.record_failure("a@example.com", now=T0)

        partitions = {p["partition"]: p for p in AuditService.list_partitions()}
        assert set(partitions) == {
            "identifier:a@example.com",
            "identifier:b@example.com",
        }
        assert partitions["identifier:a@example.com"]["last_sequence"] == 2
        assert partitions["identifier:b@example.com"]["last_sequence"] == 1

        for partition in partitions:
            assert AuditService.verify_chain(partition=partition).valid

    def test_events_without_identifier_stay_global(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "AUDIT", {"PARTITION_KEY": "per-identifier"})
        AuditService.record("MIGRATION_APPLIED", {"version": "1"})
        assert AuditService.list_events()[0].partition == "global"

    def test_unknown_strategy_falls_back_to_global(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "AUDIT", {"PARTITION_KEY": "per-tenant"})
        assert AuditService.partition_for("a@example.com") == "global"
