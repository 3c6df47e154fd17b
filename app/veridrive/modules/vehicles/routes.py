from __future__ import annotations

from flask import Blueprint, request

from app.veridrive.db import db_session
from app.veridrive.errors import AuthorizationError
from app.veridrive.modules.blockchain.service import vehicle_transactions
from app.veridrive.modules.vehicles.models import MileageHistory, Vehicle
from app.veridrive.modules.vehicles.service import (
    get_vehicle_or_404,
    record_manual_mileage,
    register_vehicle,
    require_owner_or_admin,
)
from app.veridrive.rbac import active_role, is_admin, require_auth, require_user
from app.veridrive.utils import iso, json_body, parse_int

bp = Blueprint("vehicles", __name__)


@bp.get("")
@require_auth
def vehicles_list():
    user = require_user()
    owner_id = parse_int(request.args.get("ownerId"), "ownerId") if is_admin() else None
    q = db_session().query(Vehicle)
    if owner_id is not None:
        q = q.filter(Vehicle.owner_id == owner_id)
    elif not is_admin():
        q = q.filter(Vehicle.owner_id == user.id)
    vehicles = q.order_by(Vehicle.created_at.desc(), Vehicle.id.desc()).all()
    return {"success": True, "data": [v.to_dict() for v in vehicles], "count": len(vehicles)}


@bp.post("")
@require_auth
def vehicles_create():
    s = db_session()
    vehicle = register_vehicle(s, json_body(), require_user())
    s.commit()
    return {"success": True, "message": "Vehicle registered successfully", "data": vehicle.to_dict()}, 201


@bp.get("/<int:vehicle_id>")
@require_auth
def vehicle_detail(vehicle_id: int):
    vehicle = get_vehicle_or_404(db_session(), vehicle_id)
    require_owner_or_admin(vehicle, require_user(), active_role())
    data = vehicle.to_dict()
    data["mileageHistory"] = [
        m.to_dict() for m in sorted(vehicle.mileage_history, key=lambda m: (m.recorded_at, m.id), reverse=True)
    ]
    data["fraudAlerts"] = [a.to_dict() for a in vehicle.fraud_alerts]
    data["ownershipHistory"] = [o.to_dict() for o in vehicle.ownership_history]
    return {"success": True, "data": data}


@bp.post("/<int:vehicle_id>/mileage")
@require_auth
def vehicle_mileage(vehicle_id: int):
    s = db_session()
    user = require_user()
    vehicle = get_vehicle_or_404(s, vehicle_id)
    if vehicle.owner_id != user.id and active_role() not in ("service", "admin"):
        raise AuthorizationError("Access denied. Only the owner or a service provider can record mileage.")
    payload = json_body()
    if active_role() == "service" and not payload.get("source"):
        payload["source"] = "service"
    rec = record_manual_mileage(s, vehicle, payload, user)
    s.commit()
    return {"success": True, "message": "Mileage recorded", "data": {"record": rec.to_dict(), "vehicle": vehicle.to_dict()}}, 201


@bp.get("/<int:vehicle_id>/blockchain-history")
@require_auth
def vehicle_blockchain_history(vehicle_id: int):
    s = db_session()
    vehicle = get_vehicle_or_404(s, vehicle_id)
    anchored = (
        s.query(MileageHistory)
        .filter(MileageHistory.vehicle_id == vehicle.id, MileageHistory.blockchain_hash.isnot(None))
        .order_by(MileageHistory.recorded_at.desc(), MileageHistory.id.desc())
        .all()
    )
    return {
        "success": True,
        "data": {
            "vehicleId": vehicle.id,
            "vin": vehicle.vin,
            "registrationHash": vehicle.blockchain_hash,
            "transactions": vehicle_transactions(s, vehicle),
            "mileageRecords": [
                {"mileage": m.mileage, "recordedAt": iso(m.recorded_at), "source": m.source, "blockchainHash": m.blockchain_hash}
                for m in anchored
            ],
        },
    }
