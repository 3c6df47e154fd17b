from flask import Blueprint, current_app
from sqlalchemy import text

from app.veridrive.constants import APP_NAME, APP_VERSION
from app.veridrive.db import db_session
from app.veridrive.utils import iso, utcnow

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for container probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/api/health")
def api_health():
    db_ok = True
    try:
        db_session().execute(text("SELECT 1"))
    except Exception as e:
        db_ok = False
        current_app.logger.error("Health check: database round trip failed: %s", e)
    body = {
        "success": db_ok,
        "status": "ok" if db_ok else "degraded",
        "database": "connected" if db_ok else "unavailable",
        "timestamp": iso(utcnow()),
        "version": APP_VERSION,
    }
    return body, 200 if db_ok else 503


@bp.get("/api/info")
def api_info():
    cfg = current_app.config
    return {
        "success": True,
        "data": {
            "name": APP_NAME,
            "version": APP_VERSION,
            "environment": cfg.get("ENV"),
            "features": {
                "solanaSimulated": bool(cfg.get("SIMULATE_SOLANA")),
                "arweaveUpload": bool(cfg.get("ARWEAVE_UPLOAD_URL")),
                "storageBackend": cfg.get("STORAGE_BACKEND"),
                "rateLimit": {"maxRequests": cfg.get("RATE_LIMIT_MAX_REQUESTS"), "windowSeconds": cfg.get("RATE_LIMIT_WINDOW_SECONDS")},
            },
        },
    }
