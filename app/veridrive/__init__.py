import logging
import os

from flask import Flask
from dotenv import load_dotenv

from app.veridrive import models as _models  # noqa: F401  (registers every table on Base.metadata)
from app.veridrive.config import load_config
from app.veridrive.db import init_db, teardown_db_session
from app.veridrive.errors import register_error_handlers
from app.veridrive.ratelimit import init_rate_limit
from app.veridrive.routes import bp as routes_bp
from app.veridrive.auth import bp as auth_bp, load_current_user
from app.veridrive.admin import bp as admin_bp
from app.veridrive.modules.vehicles.routes import bp as vehicles_bp
from app.veridrive.modules.telemetry.routes import bp as telemetry_bp, device_bp
from app.veridrive.modules.trust.routes import bp as trust_bp
from app.veridrive.modules.marketplace.routes import bp as marketplace_bp
from app.veridrive.modules.installs.routes import bp as installs_bp, bp_v1 as installs_v1_bp
from app.veridrive.modules.purchase.routes import bp as purchase_bp
from app.veridrive.modules.blockchain.routes import bp as blockchain_bp
from app.veridrive.modules.users.routes import bp as users_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.json.sort_keys = False

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("WALLET_ENCRYPTION_KEY"):
            app.logger.warning("WALLET_ENCRYPTION_KEY is not set; wallet creation will fail in production.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = []
        for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
            if not app.config.get(key):
                missing_s3.append(key)
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from app.veridrive.storage import S3Storage, StorageError, storage_from_config

            storage = storage_from_config(app.config)
            if isinstance(storage, S3Storage):
                try:
                    storage.check_bucket()
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
                except StorageError as e:
                    app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    if app.config.get("SIMULATE_SOLANA"):
        app.logger.info("Solana anchoring is simulated (SIMULATE_SOLANA=1)")

    register_error_handlers(app)
    init_rate_limit(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(users_bp, url_prefix="/api/users")
    app.register_blueprint(vehicles_bp, url_prefix="/api/vehicles")
    app.register_blueprint(telemetry_bp, url_prefix="/api/telemetry")
    app.register_blueprint(device_bp, url_prefix="/api/device")
    app.register_blueprint(trust_bp, url_prefix="/api/trust")
    app.register_blueprint(marketplace_bp, url_prefix="/api/marketplace")
    app.register_blueprint(installs_bp, url_prefix="/api/installs")
    app.register_blueprint(installs_v1_bp, url_prefix="/api/v1/installation-requests")
    app.register_blueprint(purchase_bp, url_prefix="/api/purchase")
    app.register_blueprint(blockchain_bp, url_prefix="/api/blockchain")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Startup logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
