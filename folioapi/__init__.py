"""The FOLIO API MODULE"""

import logging
import os
import sys

from flask import Flask, got_request_exception, jsonify, request
from flask_compress import Compress
from flask_cors import CORS
from flask_jwt_extended import JWTManager, create_access_token
from flask_limiter import Limiter
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
import rollbar
import rollbar.contrib.flask
from werkzeug.middleware.proxy_fix import ProxyFix

from folioapi.celery import make_celery
from folioapi.config import SETTINGS
from folioapi.utils.database import engine_options
from folioapi.utils.durations import isoformat, utcnow
from folioapi.utils.rate_limiting import (
    RateLimitConfig,
    auth_limits,
    get_rate_limit_key_for_auth,
    get_user_id_or_ip,
    is_rate_limiting_disabled,
    rate_limit_error_handler,
)

ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")


def configure_logging():
    """Root logger to stdout at the configured level."""
    root = logging.getLogger()
    level = SETTINGS.get("logging", {}).get("level", "INFO")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root.addHandler(handler)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return root


def cors_origins_from_env():
    raw = SETTINGS.get("environment", {}).get("CORS_ORIGINS") or (
        "http://localhost:3000,http://localhost:8080"
    )
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def check_cors_origins(origins, environment):
    """Production must name its admin UI origins explicitly and never localhost."""
    if environment != "prod":
        return
    if not origins:
        raise ValueError("CORS_ORIGINS must be explicitly set in production")
    for origin in origins:
        if "localhost" in origin.lower() or "127.0.0.1" in origin:
            raise ValueError(f"Localhost origin '{origin}' not allowed in production")


logger = configure_logging()

# Flask App
app = Flask(__name__)

trusted_proxy_count = SETTINGS.get("TRUSTED_PROXY_COUNT", 0)
if trusted_proxy_count:
    # Client addresses feed the per-IP lockout, so only trust known proxies
    app.wsgi_app = ProxyFix(  # type: ignore[assignment]
        app.wsgi_app, x_for=trusted_proxy_count, x_proto=trusted_proxy_count
    )

cors_origins = cors_origins_from_env()
try:
    check_cors_origins(cors_origins, ENVIRONMENT)
except ValueError as e:
    logger.critical(f"CORS validation failed: {e}")
    raise
CORS(
    app,
    origins=cors_origins,
    allow_headers=["Content-Type", "Authorization"],
    methods=["GET", "POST", "OPTIONS"],
)

app.config["COMPRESS_MIMETYPES"] = ["application/json"]
app.config["COMPRESS_MIN_SIZE"] = 500
Compress(app)

rollbar.init(SETTINGS.get("environment", {}).get("ROLLBAR_SERVER_TOKEN"), ENVIRONMENT)
with app.app_context():
    got_request_exception.connect(rollbar.contrib.flask.report_exception, app)


@app.after_request
def set_security_headers(response):
    response.headers["Content-Security-Policy"] = (
        "default-src 'none'; frame-ancestors 'none'"
    )
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cache-Control"] = "no-store"
    if ENVIRONMENT == "prod" or request.is_secure:
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
    return response


database_uri = SETTINGS.get("SQLALCHEMY_DATABASE_URI")
storage_timeout = SETTINGS.get("STORAGE_TIMEOUT_SECONDS", 5)
app.config.update(
    SQLALCHEMY_DATABASE_URI=database_uri,
    SQLALCHEMY_TRACK_MODIFICATIONS=False,
    # Every storage call is bounded; see folioapi.utils.database.engine_options
    SQLALCHEMY_ENGINE_OPTIONS=engine_options(database_uri, storage_timeout),
    STORAGE_TIMEOUT_SECONDS=storage_timeout,
    RATE_LIMITING=SETTINGS.get("RATE_LIMITING", {}),
    LOCKOUT=dict(SETTINGS.get("LOCKOUT", {})),
    AUDIT=dict(SETTINGS.get("AUDIT", {})),
    ATTEMPTS=dict(SETTINGS.get("ATTEMPTS", {})),
    MIGRATIONS=dict(SETTINGS.get("MIGRATIONS", {})),
    JWT_SECRET_KEY=SETTINGS.get("JWT_SECRET_KEY") or SETTINGS.get("SECRET_KEY"),
    JWT_ACCESS_TOKEN_EXPIRES=SETTINGS.get("JWT_ACCESS_TOKEN_EXPIRES"),
    JWT_TOKEN_LOCATION=SETTINGS.get("JWT_TOKEN_LOCATION"),
    broker_url=SETTINGS.get("CELERY_BROKER_URL"),
    result_backend=SETTINGS.get("CELERY_RESULT_BACKEND"),
    MAX_CONTENT_LENGTH=64 * 1024,
)

# Database
db = SQLAlchemy(app)
migrate = Migrate(app, db)

# Celery
celery = make_celery(app)

# Rate Limiting (must be after db and celery)
limiter = Limiter(
    app=app,
    key_func=get_user_id_or_ip,
    storage_uri=RateLimitConfig.get_storage_uri(),
    default_limits=RateLimitConfig.limits("DEFAULT"),
    headers_enabled=True,
    on_breach=rate_limit_error_handler,
)

jwt = JWTManager(app)

# DB has to be ready!
from folioapi import tasks  # noqa: E402
from folioapi.errors import LockoutActiveError  # noqa: E402
from folioapi.models import User  # noqa: E402
from folioapi.routes.api.v1 import endpoints, error  # noqa: E402
from folioapi.services import (  # noqa: E402
    LockoutService,
    MigrationService,
    UserService,
)

# Blueprint Flask Routing
app.register_blueprint(endpoints, url_prefix="/api/v1")

if app.config["MIGRATIONS"].get("RUN_ON_STARTUP") and not SETTINGS.get("TESTING"):
    try:
        tasks.migrations.run_pending_migrations.delay()
        logger.info("[MIGRATION]: Queued schema migration run on startup")
    except Exception as e:
        logger.warning(f"[MIGRATION]: Could not queue startup migration run: {e}")
        rollbar.report_exc_info()


@app.route("/api-health", methods=["GET"])
def health_check():
    """Database reachability and schema migration state, no auth required."""
    health = {"status": "ok", "timestamp": isoformat(utcnow())}
    try:
        summary = MigrationService.summary()
        health["database"] = "healthy"
        health["migrations"] = {
            "pending": summary["pending"],
            "last_applied": summary["last_applied"],
            "in_progress": summary["in_progress"],
        }
    except Exception as e:
        logger.warning(f"Database health check failed: {str(e)}")
        db.session.rollback()
        health["database"] = "unhealthy"
    return jsonify(health), 200


@app.route("/auth", methods=["POST"])
@limiter.limit(
    auth_limits,
    key_func=get_rate_limit_key_for_auth,
    exempt_when=is_rate_limiting_disabled,
)
def create_token():
    """Exchange credentials for an access token.

    The lockout gate runs before the credential check and its answer is
    authoritative: a locked identifier is rejected even with a correct password.
    Callers only ever learn ``locked`` and a ``retry_after`` hint.
    """
    logger.info("[JWT]: Attempting auth...")
    payload = request.get_json(silent=True) or {}
    email = payload.get("email", None)
    password = payload.get("password", None)

    if not email or not password:
        logger.warning("[JWT]: Missing email or password in request")
        return jsonify({"msg": "Email and password are required"}), 400

    identifiers = LockoutService.identifiers_for_request(email, request)
    metadata = {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }

    try:
        LockoutService.check_login_allowed(identifiers)
    except LockoutActiveError as e:
        LockoutService.record_failures(identifiers, metadata, reason="locked")
        response = jsonify(
            {
                "msg": "Bad username or password",
                "locked": True,
                "retry_after": e.retry_after_seconds,
            }
        )
        if e.retry_after_seconds:
            response.headers["Retry-After"] = str(e.retry_after_seconds)
        return response, 401

    try:
        user = UserService.authenticate_user(email, password)
    except Exception as e:
        logger.error(f"[JWT]: Error during authentication: {str(e)}")
        return jsonify({"msg": "Authentication failed"}), 500

    if user is None:
        statuses = LockoutService.record_failures(
            identifiers, metadata, reason="invalid_credentials"
        )
        locked = any(status.locked for status in statuses)
        body = {"msg": "Bad username or password", "locked": locked}
        if locked:
            body["retry_after"] = max(
                status.retry_after_seconds or 0 for status in statuses
            )
        return jsonify(body), 401

    LockoutService.record_successes(identifiers, metadata)

    access_token = create_access_token(identity=str(user.id))
    return jsonify(
        {
            "access_token": access_token,
            "user_id": str(user.id),
            "expires_in": int(app.config["JWT_ACCESS_TOKEN_EXPIRES"].total_seconds()),
        }
    )


@jwt.user_lookup_loader
def user_lookup_callback(_jwt_header, jwt_data):
    return User.query.filter_by(id=jwt_data["sub"]).one_or_none()


HTTP_ERRORS = {
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Request too large",
    500: "Internal Server Error",
}


def _register_error_handler(status, detail):
    app.register_error_handler(status, lambda e: error(status=status, detail=detail))


for _status, _detail in HTTP_ERRORS.items():
    _register_error_handler(_status, _detail)
