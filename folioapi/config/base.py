from datetime import timedelta
import logging
import os

logger = logging.getLogger(__name__)


def _redis_url():
    return os.getenv("REDIS_URL") or (
        "redis://"
        + (os.getenv("REDIS_PORT_6379_TCP_ADDR") or "localhost")
        + ":"
        + (os.getenv("REDIS_PORT_6379_TCP_PORT") or "6379")
    )


SETTINGS = {
    "logging": {"level": os.getenv("LOG_LEVEL", "INFO")},
    "service": {"port": 3000},
    "environment": {
        "ROLLBAR_SERVER_TOKEN": os.getenv("ROLLBAR_SERVER_TOKEN"),
        "CORS_ORIGINS": os.getenv("CORS_ORIGINS"),
    },
    "ROLES": ["SUPERADMIN", "ADMIN", "USER"],
    "SQLALCHEMY_DATABASE_URI": os.getenv("DATABASE_URL")
    or (
        "postgresql+psycopg://"
        + (os.getenv("DATABASE_ENV_POSTGRES_USER") or "postgres")
        + ":"
        + (os.getenv("DATABASE_ENV_POSTGRES_PASSWORD") or "postgres")
        + "@"
        + (os.getenv("DATABASE_PORT_5432_TCP_ADDR") or "localhost")
        + ":"
        + (os.getenv("DATABASE_PORT_5432_TCP_PORT") or "5432")
        + "/"
        + (os.getenv("DATABASE_ENV_POSTGRES_DB") or "postgres")
    ),
    # Upper bound for any single storage call; lockout reads fail closed past it
    "STORAGE_TIMEOUT_SECONDS": int(os.getenv("STORAGE_TIMEOUT_SECONDS", "5")),
    "SECRET_KEY": os.getenv("SECRET_KEY"),
    "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY") or os.getenv("SECRET_KEY"),
    "JWT_ACCESS_TOKEN_EXPIRES": timedelta(seconds=60 * 60 * 1),
    "JWT_TOKEN_LOCATION": ["headers"],
    "TRUSTED_PROXY_COUNT": int(os.getenv("TRUSTED_PROXY_COUNT", "0")),
    "CELERY_BROKER_URL": _redis_url(),
    "CELERY_RESULT_BACKEND": _redis_url(),
    # Celery also expects lowercase versions
    "broker_url": _redis_url(),
    "result_backend": _redis_url(),
    # Account lockout policy (sliding window + exponential backoff)
    "LOCKOUT": {
        "THRESHOLD": int(os.getenv("LOCKOUT_THRESHOLD", "5")),
        "WINDOW": os.getenv("LOCKOUT_WINDOW", "15m"),
        "BASE_DURATION": os.getenv("LOCKOUT_BASE_DURATION", "15m"),
        "MAX_DURATION": os.getenv("LOCKOUT_MAX_DURATION", "24h"),
        "REPEAT_OFFENSE_WINDOW": os.getenv("LOCKOUT_REPEAT_OFFENSE_WINDOW", "24h"),
        # Also track and lock the client IP address, not only the account
        "TRACK_IP": os.getenv("LOCKOUT_TRACK_IP", "true").lower() == "true",
    },
    "AUDIT": {
        # "global" or "per-identifier"
        "PARTITION_KEY": os.getenv("AUDIT_PARTITION_KEY", "global"),
    },
    "ATTEMPTS": {
        "RETENTION": os.getenv("ATTEMPT_RETENTION", "30d"),
    },
    "MIGRATIONS": {
        "DIRECTORY": os.getenv(
            "SCHEMA_MIGRATIONS_DIR",
            os.path.join(
                os.path.dirname(os.path.dirname(__file__)), "schema_migrations"
            ),
        ),
        "LOCK_TTL": os.getenv("MIGRATION_LOCK_TTL", "1h"),
        "RUN_ON_STARTUP": os.getenv("RUN_MIGRATIONS_ON_STARTUP", "false").lower()
        == "true",
    },
    # Rate limiting configuration
    # Note: ADMIN and SUPERADMIN users are automatically exempt from all rate limits
    "RATE_LIMITING": {
        "ENABLED": os.getenv("RATE_LIMITING_ENABLED", "true").lower() == "true",
        "STORAGE_URI": os.getenv("RATE_LIMIT_STORAGE_URI") or os.getenv("REDIS_URL"),
        "DEFAULT_LIMITS": [
            s.strip()
            for s in (
                os.getenv("DEFAULT_LIMITS") or "1000 per hour,100 per minute"
            ).split(",")
        ],
        "AUTH_LIMITS": [
            s.strip()
            for s in (os.getenv("AUTH_LIMITS") or "60 per minute,600 per hour").split(
                ","
            )
        ],
        "ADMIN_LIMITS": [
            s.strip()
            for s in (os.getenv("ADMIN_LIMITS") or "300 per minute").split(",")
        ],
    },
}

if not SETTINGS["JWT_SECRET_KEY"]:
    logger.warning(
        "JWT_SECRET_KEY is not set. Token issuance will fail until it is configured."
    )
