"""MIGRATION SERVICE"""

import logging
import time
import uuid

from flask import current_app
import rollbar
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from folioapi import db
from folioapi.config import SETTINGS
from folioapi.errors import (
    AuditWriteFailure,
    ConcurrentMigrationError,
    MigrationChecksumMismatch,
    StorageTimeout,
)
from folioapi.migrations_catalog import MigrationCatalog, version_key
from folioapi.models import MigrationLock, MigrationRecord
from folioapi.services.audit_service import AuditService
from folioapi.utils.database import storage_timeout_guard
from folioapi.utils.durations import parse_duration, utcnow
from folioapi.utils.security_events import log_security_event

logger = logging.getLogger(__name__)

GATE_NAME = "schema_migrations"
# A step loses its commit when a login event wins the audit head race
STEP_RETRIES = 3
REQUIRED_TABLES = (
    "auth_attempts",
    "lockouts",
    "audit_log",
    "audit_chain_heads",
    "schema_migrations",
    "migration_lock",
)


class MigrationConfig:
    @staticmethod
    def _get_config():
        try:
            return current_app.config.get("MIGRATIONS") or SETTINGS.get(
                "MIGRATIONS", {}
            )
        except RuntimeError:
            return SETTINGS.get("MIGRATIONS", {})

    @classmethod
    def directory(cls):
        return cls._get_config().get("DIRECTORY")

    @classmethod
    def lock_ttl(cls):
        return parse_duration(cls._get_config().get("LOCK_TTL", "1h"))


class MigrationRunResult:
    def __init__(self):
        self.applied = []
        self.failed = None
        self.error = None
        self.halted = False
        self.skipped = []

    @property
    def success(self):
        return self.failed is None

    def serialize(self):
        return {
            "success": self.success,
            "applied": self.applied,
            "failed": self.failed,
            "error": self.error,
            "halted": self.halted,
            "skipped": self.skipped,
        }


class MigrationService:
    """Applies catalog migrations in order, exactly once, one run at a time."""

    @staticmethod
    def load_catalog():
        return MigrationCatalog.from_directory(MigrationConfig.directory())

    @staticmethod
    def _acquire_gate(owner):
        now = utcnow()
        expires_at = now + MigrationConfig.lock_ttl()
        try:
            db.session.add(MigrationLock(GATE_NAME, owner, now, expires_at))
            db.session.commit()
            return
        except IntegrityError:
            db.session.rollback()

        # Only a token whose holder died (expired) may be taken over
        taken = (
            db.session.query(MigrationLock)
            .filter(MigrationLock.name == GATE_NAME, MigrationLock.expires_at <= now)
            .update(
                {
                    "owner": owner,
                    "acquired_at": now,
                    "expires_at": expires_at,
                    "halt_requested": False,
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
        if taken != 1:
            logger.warning("[MIGRATION]: Run rejected, another run holds the gate")
            raise ConcurrentMigrationError("A migration run is already in progress")
        logger.warning(f"[MIGRATION]: Took over expired migration gate as {owner}")

    @staticmethod
    def _release_gate(owner):
        try:
            db.session.rollback()
            db.session.query(MigrationLock).filter_by(
                name=GATE_NAME, owner=owner
            ).delete(synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            # The token expires on its own after LOCK_TTL
            logger.error(f"[MIGRATION]: Could not release migration gate: {e}")
            rollbar.report_exc_info()

    @staticmethod
    def _should_halt(owner):
        """True when a halt was requested or the gate is no longer ours."""
        halt = (
            db.session.query(MigrationLock.halt_requested)
            .filter_by(name=GATE_NAME, owner=owner)
            .scalar()
        )
        db.session.commit()
        return halt is None or bool(halt)

    @staticmethod
    def _refresh_gate(owner):
        db.session.query(MigrationLock).filter_by(name=GATE_NAME, owner=owner).update(
            {"expires_at": utcnow() + MigrationConfig.lock_ttl()},
            synchronize_session=False,
        )
        db.session.commit()

    @staticmethod
    def request_halt():
        """Stop scheduling further steps; the step in flight still completes."""
        updated = (
            db.session.query(MigrationLock)
            .filter(MigrationLock.name == GATE_NAME)
            .update({"halt_requested": True}, synchronize_session=False)
        )
        db.session.commit()
        if updated:
            logger.info("[MIGRATION]: Halt requested for the active run")
        return bool(updated)

    @staticmethod
    def verify_checksums(catalog, records):
        for definition in catalog:
            record = records.get(definition.version)
            if record is None or record.checksum == definition.checksum:
                continue
            logger.critical(
                f"[MIGRATION]: Checksum mismatch for {definition.version}: "
                f"recorded {record.checksum}, catalog {definition.checksum}"
            )
            log_security_event(
                "MIGRATION_CHECKSUM_MISMATCH",
                details={"version": definition.version},
                level="critical",
            )
            raise MigrationChecksumMismatch(
                f"Migration {definition.version} was modified after it was recorded",
                version=definition.version,
                recorded_checksum=record.checksum,
                catalog_checksum=definition.checksum,
            )

    @staticmethod
    def run(catalog=None, actor=None):
        """Apply every pending catalog migration in ascending version order.

        Raises:
            ConcurrentMigrationError: another run holds the gate.
            MigrationChecksumMismatch: a recorded migration was modified; nothing
                is applied.
            AuditWriteFailure, StorageTimeout: the run stops; the step in flight
                is rolled back and stays pending.
        """
        catalog = catalog if catalog is not None else MigrationService.load_catalog()
        actor_id = str(getattr(actor, "id", actor)) if actor is not None else None
        owner = uuid.uuid4().hex

        with storage_timeout_guard("migration gate"):
            MigrationService._acquire_gate(owner)
        logger.info(f"[MIGRATION]: Run {owner} started with {len(catalog)} migrations")
        try:
            with storage_timeout_guard("migration run"):
                return MigrationService._run_locked(catalog, actor_id, owner)
        finally:
            MigrationService._release_gate(owner)

    @staticmethod
    def _run_locked(catalog, actor_id, owner):
        result = MigrationRunResult()
        records = {r.version: r for r in db.session.query(MigrationRecord).all()}
        applied_versions = [v for v, r in records.items() if r.status == "applied"]
        highest = max(applied_versions, key=version_key, default=None)
        highest_key = version_key(highest) if highest is not None else None

        MigrationService.verify_checksums(catalog, records)

        pending = []
        for definition in catalog:
            record = records.get(definition.version)
            if record is not None and record.status == "applied":
                continue
            if highest is not None and version_key(definition.version) < highest_key:
                logger.warning(
                    f"[MIGRATION]: {definition.version} is older than applied "
                    f"{highest} and will not be applied out of order"
                )
                result.skipped.append(definition.version)
                continue
            pending.append(definition)

        for definition in pending:
            if MigrationService._should_halt(owner):
                logger.warning(f"[MIGRATION]: Halted before {definition.version}")
                result.halted = True
                break
            if not MigrationService._apply_step(definition, actor_id, result):
                break
            MigrationService._refresh_gate(owner)

        logger.info(
            f"[MIGRATION]: Run {owner} finished, applied {len(result.applied)}, "
            f"failed {result.failed}"
        )
        return result

    @staticmethod
    def _mark_pending(definition):
        record = db.session.get(MigrationRecord, definition.version)
        if record is None:
            record = MigrationRecord(
                definition.version, definition.name, definition.checksum
            )
            db.session.add(record)
        record.status = "pending"
        record.attempted_at = utcnow()
        record.error_message = None
        db.session.commit()

    @staticmethod
    def _apply_step(definition, actor_id, result):
        """Apply one migration. Returns False when the run must stop."""
        MigrationService._mark_pending(definition)

        for remaining in reversed(range(STEP_RETRIES)):
            started = time.monotonic()
            try:
                definition.apply(db.session)
            except Exception as e:
                db.session.rollback()
                MigrationService._record_failure(
                    definition, actor_id, e, int((time.monotonic() - started) * 1000)
                )
                result.failed = definition.version
                result.error = str(e)
                return False

            duration_ms = int((time.monotonic() - started) * 1000)
            try:
                record = db.session.get(MigrationRecord, definition.version)
                record.status = "applied"
                record.applied_at = utcnow()
                record.duration_ms = duration_ms
                AuditService.append(
                    "MIGRATION_APPLIED",
                    {
                        "version": definition.version,
                        "name": definition.name,
                        "checksum": definition.checksum,
                        "duration_ms": duration_ms,
                        "actor": actor_id,
                    },
                )
                db.session.commit()
            except (IntegrityError, StaleDataError):
                db.session.rollback()
                if not remaining:
                    raise
                logger.info(f"[MIGRATION]: Retrying {definition.version}")
                continue
            except Exception:
                db.session.rollback()
                raise

            logger.info(
                f"[MIGRATION]: Applied {definition.version} ({duration_ms}ms)"
            )
            result.applied.append(definition.version)
            return True
        return False

    @staticmethod
    def _record_failure(definition, actor_id, error, duration_ms):
        logger.error(f"[MIGRATION]: {definition.version} failed: {error}")
        rollbar.report_exc_info()
        record = db.session.get(MigrationRecord, definition.version)
        record.status = "failed"
        record.duration_ms = duration_ms
        record.error_message = str(error)[:2000]
        try:
            AuditService.append(
                "MIGRATION_FAILED",
                {
                    "version": definition.version,
                    "name": definition.name,
                    "checksum": definition.checksum,
                    "error": str(error)[:500],
                    "actor": actor_id,
                },
            )
            db.session.commit()
        except (AuditWriteFailure, SQLAlchemyError) as e:
            db.session.rollback()
            logger.critical(
                f"[MIGRATION]: Could not record failure of {definition.version}: {e}"
            )
            raise AuditWriteFailure(
                f"Could not record failure of migration {definition.version}"
            ) from e

    @staticmethod
    def status():
        records = db.session.query(MigrationRecord).all()
        return sorted(records, key=lambda r: version_key(r.version))

    @staticmethod
    def active_run():
        gate = db.session.get(MigrationLock, GATE_NAME)
        if gate is None or gate.expires_at <= utcnow():
            return None
        return gate

    @staticmethod
    def summary(catalog=None):
        catalog = catalog if catalog is not None else MigrationService.load_catalog()
        records = {r.version: r for r in MigrationService.status()}
        applied = [v for v, r in records.items() if r.status == "applied"]
        failed = [v for v, r in records.items() if r.status == "failed"]
        pending = [
            d.version
            for d in catalog
            if d.version not in records or records[d.version].status != "applied"
        ]
        gate = MigrationService.active_run()
        return {
            "available": len(catalog),
            "applied": len(applied),
            "pending": len(pending),
            "failed": len(failed),
            "pending_versions": pending,
            "last_applied": max(applied, key=version_key, default=None),
            "in_progress": gate is not None,
            "run": gate.serialize() if gate else None,
        }

    @staticmethod
    def verify_schema():
        """Check that every table the safety layer writes to exists.

        Never raises for storage problems; an unreachable database is reported
        as an invalid schema.
        """
        try:
            with storage_timeout_guard("schema verification"):
                present = set(inspect(db.session.connection()).get_table_names())
            db.session.commit()
        except (SQLAlchemyError, StorageTimeout) as e:
            db.session.rollback()
            logger.error(f"[MIGRATION]: Schema verification failed: {e}")
            rollbar.report_exc_info()
            return {"valid": False, "missing": [], "error": str(e)}

        missing = [table for table in REQUIRED_TABLES if table not in present]
        if missing:
            logger.error(f"[MIGRATION]: Required tables missing: {missing}")
        else:
            logger.info("[MIGRATION]: Schema verification passed")
        return {"valid": not missing, "missing": missing, "error": None}
