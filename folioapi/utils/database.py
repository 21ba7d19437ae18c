"""Database utility functions and decorators."""

from contextlib import contextmanager
from functools import wraps
import logging
import time

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from folioapi.errors import StorageTimeout

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (
    "server closed the connection unexpectedly",
    "connection was closed",
    "connection is closed",
    "lost connection",
    "connection reset by peer",
    "broken pipe",
    "network is unreachable",
    "no connection to the server",
    "could not connect to server",
)

TIMEOUT_ERRORS = (
    "statement timeout",
    "lock timeout",
    "canceling statement",
    "database is locked",
    "timed out",
    "timeout expired",
)


def engine_options(database_uri, timeout_seconds):
    """Build SQLAlchemy engine options that bound every storage call.

    PostgreSQL gets server-side ``statement_timeout``/``lock_timeout``; SQLite gets
    its busy timeout. Both share the pool checkout timeout.
    """
    timeout_seconds = max(int(timeout_seconds or 1), 1)
    if (database_uri or "").startswith("sqlite"):
        return {
            "connect_args": {"timeout": timeout_seconds, "check_same_thread": False},
            "pool_timeout": timeout_seconds,
        }

    timeout_ms = timeout_seconds * 1000
    return {
        # Recycle connections after 1 hour to prevent stale connections
        "pool_recycle": 3600,
        # Enable connection pre-ping to test connections before use
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": timeout_seconds,
        "pool_reset_on_return": "commit",
        "connect_args": {
            "options": (
                f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}"
            ),
            "connect_timeout": timeout_seconds,
        },
    }


def is_timeout_error(error):
    if isinstance(error, PoolTimeoutError | StorageTimeout):
        return True
    if isinstance(error, OperationalError):
        message = str(error).lower()
        return any(fragment in message for fragment in TIMEOUT_ERRORS)
    return False


@contextmanager
def storage_timeout_guard(operation):
    """Translate storage timeouts raised inside the block into StorageTimeout."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as e:
        if is_timeout_error(e):
            logger.warning(f"[DB]: Storage timeout during {operation}: {e}")
            raise StorageTimeout(f"Storage timed out during {operation}") from e
        raise


def retry_db_operation(max_retries=3, backoff_seconds=1):
    """
    Decorator to retry read-only database operations on connection failures.

    Uses exponential backoff and disposes of the connection pool when a
    connection error is detected. Timeouts are not retried: they surface as
    StorageTimeout so callers can fail closed.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        backoff_seconds: Initial backoff time in seconds, doubles with each retry
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            # Import db here to avoid circular imports
            from folioapi import db

            last_exception = None
            backoff = backoff_seconds

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except (OperationalError, DisconnectionError) as e:
                    last_exception = e
                    if is_timeout_error(e):
                        db.session.rollback()
                        raise StorageTimeout(
                            f"Storage timed out during {func.__name__}"
                        ) from e

                    error_msg = str(e).lower()
                    is_connection_error = any(
                        err in error_msg for err in CONNECTION_ERRORS
                    )
                    if not is_connection_error or attempt == max_retries:
                        raise

                    logger.warning(
                        f"Database connection error on attempt {attempt + 1}/"
                        f"{max_retries + 1}: {e}. Retrying in {backoff} seconds..."
                    )

                    try:
                        db.session.rollback()
                        db.engine.dispose()
                        logger.info("Database connection pool refreshed")
                    except Exception as cleanup_error:
                        logger.warning(
                            f"Error during connection cleanup: {cleanup_error}"
                        )

                    time.sleep(backoff)
                    backoff *= 2

            # This should never be reached, but just in case
            raise last_exception

        return wrapper

    return decorator
