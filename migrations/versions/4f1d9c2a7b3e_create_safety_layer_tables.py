"""Create the user, attempt, lockout, audit and schema migration tables

Revision ID: 4f1d9c2a7b3e
Revises:
Create Date: 2026-10-19 09:00:00.000000

TABLES:
- user: back-office accounts (credential check + admin roles)
- auth_attempts: immutable login attempt history
- lockouts: per-identifier lockout state, versioned for optimistic locking
- audit_log / audit_chain_heads: hash-chained audit trail and its per-partition head
- schema_migrations / migration_lock: catalog migration outcomes and the run gate
"""

from alembic import op
import sqlalchemy as sa

from folioapi.models import GUID

# revision identifiers, used by Alembic.
revision = "4f1d9c2a7b3e"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("password", sa.String(length=200), nullable=False),
        sa.Column("role", sa.String(length=10), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "auth_attempts",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("outcome", sa.String(length=10), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_auth_attempts_identifier_occurred_at",
        "auth_attempts",
        ["identifier", "occurred_at"],
    )
    op.create_index("ix_auth_attempts_occurred_at", "auth_attempts", ["occurred_at"])

    op.create_table(
        "lockouts",
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_start", sa.DateTime(), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(), nullable=True),
        sa.Column("offense_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_locked_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("last_unlocked_at", sa.DateTime(), nullable=True),
        sa.Column("reset_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("failure_count >= 0", name="ck_lockouts_failure_count"),
        sa.PrimaryKeyConstraint("identifier"),
    )
    op.create_index("ix_lockouts_locked_until", "lockouts", ["locked_until"])

    op.create_table(
        "audit_log",
        sa.Column("partition", sa.String(length=300), nullable=False),
        sa.Column("sequence", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("event_type", sa.String(length=40), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("previous_hash", sa.String(length=64), nullable=False),
        sa.Column("current_hash", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("partition", "sequence"),
    )
    op.create_index("ix_audit_log_event_type", "audit_log", ["event_type"])

    op.create_table(
        "audit_chain_heads",
        sa.Column("partition", sa.String(length=300), nullable=False),
        sa.Column("last_sequence", sa.BigInteger(), nullable=False),
        sa.Column("last_hash", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("partition"),
    )

    op.create_table(
        "schema_migrations",
        sa.Column("version", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False),
        sa.Column("attempted_at", sa.DateTime(), nullable=True),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("version"),
    )

    op.create_table(
        "migration_lock",
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column(
            "halt_requested", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade():
    op.drop_table("migration_lock")
    op.drop_table("schema_migrations")
    op.drop_table("audit_chain_heads")
    op.drop_index("ix_audit_log_event_type", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_lockouts_locked_until", table_name="lockouts")
    op.drop_table("lockouts")
    op.drop_index("ix_auth_attempts_occurred_at", table_name="auth_attempts")
    op.drop_index(
        "ix_auth_attempts_identifier_occurred_at", table_name="auth_attempts"
    )
    op.drop_table("auth_attempts")
    op.drop_table("user")
