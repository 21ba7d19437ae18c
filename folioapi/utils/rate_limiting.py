"""Rate limiting for the login and admin endpoints

Request throttling sits in front of the lockout policy: it caps request volume
per client, while lockouts count failed credentials per identifier.
"""

import hashlib
import logging

from flask import current_app, jsonify, request
from flask_jwt_extended import get_current_user, verify_jwt_in_request
from flask_limiter.util import get_remote_address

from folioapi.config import SETTINGS
from folioapi.utils.permissions import is_admin_or_higher
from folioapi.utils.security_events import log_rate_limit_exceeded

logger = logging.getLogger(__name__)


class RateLimitConfig:
    DEFAULTS = {
        "DEFAULT": ["1000 per hour"],
        "AUTH": ["5 per minute"],
        "ADMIN": ["300 per minute"],
    }

    @classmethod
    def _get_config(cls):
        """Get rate limiting config from Flask app config or fallback to SETTINGS"""
        try:
            return current_app.config.get("RATE_LIMITING", {})
        except RuntimeError:
            return SETTINGS.get("RATE_LIMITING", {})

    @classmethod
    def is_enabled(cls):
        return cls._get_config().get("ENABLED", True)

    @classmethod
    def get_storage_uri(cls):
        return (
            cls._get_config().get("STORAGE_URI")
            or SETTINGS.get("REDIS_URL")
            or SETTINGS.get("CELERY_BROKER_URL")
        )

    @classmethod
    def limits(cls, scope):
        """Configured limits of a scope: DEFAULT, AUTH or ADMIN."""
        return cls._get_config().get(f"{scope}_LIMITS", cls.DEFAULTS[scope])

    @classmethod
    def limit_string(cls, scope):
        return ";".join(cls.limits(scope))


def auth_limits():
    return RateLimitConfig.limit_string("AUTH")


def admin_limits():
    return RateLimitConfig.limit_string("ADMIN")


def is_rate_limiting_disabled():
    """exempt_when hook: true when limiting is off in config or on the limiter."""
    from folioapi import limiter

    return not (RateLimitConfig.is_enabled() and limiter.enabled)


def get_user_id_or_ip():
    """Key authenticated callers by user and anonymous ones by address.

    Admins are exempt; they are the ones lifting lockouts during an incident.
    """
    try:
        verify_jwt_in_request(optional=True)
        current_user = get_current_user()
    except Exception as e:
        logger.debug(f"Failed to get current user for rate limiting: {e}")
        current_user = None

    if current_user is not None:
        if is_admin_or_higher(current_user):
            return None
        return f"user:{current_user.id}"
    return f"ip:{get_remote_address()}"


def get_rate_limit_key_for_auth():
    """Key /auth requests by hashed login identifier plus address."""
    payload = request.get_json(silent=True)
    email = payload.get("email") if isinstance(payload, dict) else None
    ip = get_remote_address()
    if not email:
        return f"auth:anon:{ip}"
    identifier = str(email).strip().lower()
    digest = hashlib.sha256(identifier.encode()).hexdigest()[:16]
    return f"auth:{digest}:{ip}"


def rate_limit_error_handler(limit):
    """on_breach hook: answer 429 in the same shape as the other API errors."""
    retry_after = getattr(limit, "retry_after", None)
    endpoint = request.path or request.endpoint or "unknown_endpoint"

    logger.info(f"[RATE_LIMIT]: {limit} exceeded on {endpoint}")
    log_rate_limit_exceeded(limit_type=endpoint)

    body = {
        "status": 429,
        "detail": "Rate limit exceeded. Please try again later.",
        "error_code": "rate_limit_exceeded",
    }
    if retry_after:
        body["retry_after"] = retry_after

    response = jsonify(body)
    response.status_code = 429
    if retry_after:
        response.headers["Retry-After"] = str(retry_after)
    return response
