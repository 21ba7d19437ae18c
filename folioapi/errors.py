"""FOLIO API ERRORS"""


class Error(Exception):
    error_code = "error"

    def __init__(self, message):
        self.message = message
        super().__init__(message)

    @property
    def serialize(self):
        return {"message": self.message, "error_code": self.error_code}


class AuthError(Error):
    error_code = "unauthorized"


class NotAllowed(Error):
    error_code = "forbidden"


class ValidationError(Error):
    """Bad input from a caller. Recovered locally, never retried as-is."""

    error_code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    @property
    def serialize(self):
        data = super().serialize
        if self.field:
            data["field"] = self.field
        return data


class LockoutActiveError(Error):
    """Raised when an identifier is locked. Authoritative, callers must not retry."""

    error_code = "account_locked"

    def __init__(
        self,
        message: str,
        identifier: str | None = None,
        retry_after_seconds: int | None = None,
    ):
        super().__init__(message)
        self.identifier = identifier
        self.retry_after_seconds = retry_after_seconds

    @property
    def serialize(self):
        # No identifier, end users only see the retry hint
        return {
            "message": self.message,
            "error_code": self.error_code,
            "locked": True,
            "retry_after": self.retry_after_seconds,
        }


class TrackingDegraded(Error, UserWarning):
    """Attempt tracking could not persist. Non-fatal, the login proceeds."""

    error_code = "tracking_degraded"


class AuditWriteFailure(Error):
    """The audit event for a state change could not be persisted.

    The state change that triggered it is rolled back with it.
    """

    error_code = "audit_write_failure"


class MigrationChecksumMismatch(Error):
    """A recorded migration no longer matches its definition."""

    error_code = "migration_checksum_mismatch"

    def __init__(
        self,
        message: str,
        version: str | None = None,
        recorded_checksum: str | None = None,
        catalog_checksum: str | None = None,
    ):
        super().__init__(message)
        self.version = version
        self.recorded_checksum = recorded_checksum
        self.catalog_checksum = catalog_checksum

    @property
    def serialize(self):
        data = super().serialize
        data.update(
            {
                "version": self.version,
                "recorded_checksum": self.recorded_checksum,
                "catalog_checksum": self.catalog_checksum,
            }
        )
        return data


class ConcurrentMigrationError(Error):
    """Another migration run holds the gate. Retry later."""

    error_code = "migration_in_progress"


class StorageTimeout(Error):
    error_code = "storage_timeout"
