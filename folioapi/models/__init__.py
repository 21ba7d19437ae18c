"""FOLIO API MODELS MODULE"""

import uuid

from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.types import CHAR, TypeDecorator


# Backend-agnostic GUID type, after
# https://docs.sqlalchemy.org/en/20/core/custom_types.html
class GUID(TypeDecorator):
    """UUID column: native on PostgreSQL, CHAR(32) hex everywhere else."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(UUID())
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == "postgresql":
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        return value.hex

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


from folioapi.models.audit_event import AuditChainHead, AuditEvent  # noqa: E402
from folioapi.models.auth_attempt import AuthAttempt  # noqa: E402
from folioapi.models.lockout_record import LockoutRecord  # noqa: E402
from folioapi.models.migration_record import (  # noqa: E402
    MigrationLock,
    MigrationRecord,
)
from folioapi.models.user import User  # noqa: E402

__all__ = [
    "AuditChainHead",
    "AuditEvent",
    "AuthAttempt",
    "LockoutRecord",
    "MigrationLock",
    "MigrationRecord",
    "User",
]
