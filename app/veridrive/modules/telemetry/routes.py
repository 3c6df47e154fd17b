from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.veridrive.db import db_session
from app.veridrive.errors import ApiError
from app.veridrive.modules.telemetry.consolidation import consolidate_day, parse_batch_date, vehicle_batches
from app.veridrive.modules.telemetry.models import Device
from app.veridrive.modules.telemetry.service import (
    fraud_alerts,
    get_device_or_404,
    ingest_device_status,
    latest_obd,
    mileage_history,
    register_device,
)
from app.veridrive.rbac import require_auth, require_role, require_user
from app.veridrive.utils import iso, json_body, parse_int

bp = Blueprint("telemetry", __name__)
device_bp = Blueprint("device", __name__)

_NO_CACHE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


# ---------- Telemetry (read side) ----------
@bp.get("/fraud-alerts/<int:vehicle_id>")
@require_auth
def telemetry_fraud_alerts(vehicle_id: int):
    alerts = fraud_alerts(db_session(), vehicle_id, limit=10)
    return {"success": True, "data": alerts, "count": len(alerts)}


@bp.get("/latest-obd/<int:vehicle_id>")
@require_auth
def telemetry_latest_obd(vehicle_id: int):
    data = latest_obd(db_session(), vehicle_id)
    if data is None:
        return {"success": True, "data": None, "message": "No OBD data available"}, 200, _NO_CACHE
    return {"success": True, "data": data}, 200, _NO_CACHE


@bp.get("/history/<int:vehicle_id>")
@require_auth
def telemetry_history(vehicle_id: int):
    limit = min(parse_int(request.args.get("limit"), "limit", default=50, minimum=1) or 50, 500)
    offset = parse_int(request.args.get("offset"), "offset", default=0, minimum=0) or 0
    rows, total = mileage_history(db_session(), vehicle_id, limit=limit, offset=offset)
    return {"success": True, "data": rows, "total": total, "limit": limit, "offset": offset}


@bp.get("/batches/<int:vehicle_id>")
@require_auth
def telemetry_batches(vehicle_id: int):
    batches = vehicle_batches(db_session(), vehicle_id)
    return {"success": True, "data": [b.to_dict() for b in batches], "count": len(batches)}


@bp.post("/consolidate")
@require_role("admin")
def telemetry_consolidate():
    s = db_session()
    summary = consolidate_day(s, parse_batch_date(json_body().get("date")))
    s.commit()
    return {"success": True, "data": summary.to_dict()}


# ---------- Device ingestion ----------
@device_bp.post("/status")
def device_status():
    s = db_session()
    payload = json_body()
    try:
        result = ingest_device_status(s, payload)
        s.commit()
    except ApiError:
        raise
    except Exception:
        current_app.logger.exception(
            "Device ingestion failed (device=%s request_id=%s)",
            payload.get("deviceID") or payload.get("deviceId"),
            getattr(g, "request_id", None),
        )
        raise

    rec = result.telemetry
    if result.flagged:
        return {
            "success": False,
            "flagged": True,
            "reason": result.reason,
            "telemetryId": rec.id,
            "message": "Telemetry flagged for fraud detection",
            "data": {
                "vehicleId": result.vehicle.id if result.vehicle else None,
                "previousMileage": rec.previous_mileage,
                "reportedMileage": rec.mileage,
                "delta": rec.delta,
                "validationStatus": rec.validation_status,
                "validationErrors": rec.validation_errors or [],
            },
        }, 422
    return {
        "status": "success",
        "message": "Device status received",
        "data": {
            "deviceID": rec.device_id,
            "telemetryId": rec.id,
            "vehicleId": result.vehicle.id if result.vehicle else None,
            "processedAt": iso(rec.received_at),
            "validationStatus": rec.validation_status,
            "flagged": rec.flagged,
            "alerts": result.alerts,
        },
    }


@device_bp.get("/status/<device_id>")
@require_role("admin", "service")
def device_detail(device_id: str):
    device = get_device_or_404(db_session(), device_id)
    return {"success": True, "data": device.to_dict()}


@device_bp.get("/list")
@require_role("admin")
def device_list():
    devices = db_session().query(Device).order_by(Device.last_seen.desc(), Device.id.desc()).all()
    return {"success": True, "data": [d.to_dict() for d in devices], "count": len(devices)}


@device_bp.post("/register")
@require_role("admin", "service")
def device_register():
    s = db_session()
    device = register_device(s, json_body(), require_user())
    s.commit()
    return {"success": True, "message": "Device registered", "data": device.to_dict()}, 201
