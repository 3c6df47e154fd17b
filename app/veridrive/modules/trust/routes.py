from __future__ import annotations

from flask import Blueprint, request

from app.veridrive.audit import record_event
from app.veridrive.db import db_session
from app.veridrive.errors import NotFoundError, ValidationError
from app.veridrive.modules.trust.models import TrustEvent
from app.veridrive.modules.trust.service import (
    calculate_trust_score,
    get_current_trust_score,
    get_trust_score_history,
    recompute_trust_score,
    update_trust_score,
    user_trust_summary,
)
from app.veridrive.modules.vehicles.service import get_vehicle_or_404
from app.veridrive.rbac import require_auth, require_role, require_self_or_admin, require_user
from app.veridrive.utils import json_body, parse_datetime, parse_int

bp = Blueprint("trust", __name__)


@bp.get("/user-score/<int:user_id>")
@require_auth
def user_score(user_id: int):
    require_self_or_admin(user_id)
    return {"success": True, "data": user_trust_summary(db_session(), user_id)}


@bp.get("/<int:vehicle_id>")
@require_auth
def vehicle_score(vehicle_id: int):
    vehicle = get_vehicle_or_404(db_session(), vehicle_id)
    data = get_current_trust_score(vehicle)
    data["calculatedScore"] = calculate_trust_score(vehicle)
    return {"success": True, "data": data}


@bp.get("/<int:vehicle_id>/history")
@require_auth
def vehicle_history(vehicle_id: int):
    s = db_session()
    get_vehicle_or_404(s, vehicle_id)
    limit = min(parse_int(request.args.get("limit"), "limit", default=50, minimum=1) or 50, 500)
    events = get_trust_score_history(s, vehicle_id, limit=limit)
    return {"success": True, "data": [e.to_dict() for e in events], "count": len(events)}


@bp.get("/<int:vehicle_id>/event/<int:event_id>")
@require_auth
def vehicle_event(vehicle_id: int, event_id: int):
    event = db_session().get(TrustEvent, event_id)
    if event is None or event.vehicle_id != vehicle_id:
        raise NotFoundError("Trust event not found")
    return {"success": True, "data": event.to_dict()}


@bp.post("/<int:vehicle_id>/recompute")
@require_role("admin")
def vehicle_recompute(vehicle_id: int):
    s = db_session()
    vehicle = get_vehicle_or_404(s, vehicle_id)
    before = vehicle.trust_score
    score = recompute_trust_score(s, vehicle)
    record_event(
        s,
        actor=require_user(),
        action="trust.recompute",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        metadata={"before": before, "after": score},
    )
    s.commit()
    return {"success": True, "data": get_current_trust_score(vehicle)}


@bp.post("/<int:vehicle_id>/manual-adjust")
@require_role("admin")
def vehicle_manual_adjust(vehicle_id: int):
    payload = json_body()
    change = parse_int(payload.get("change"), "change")
    reason = (payload.get("reason") or "").strip()
    if change is None or not reason:
        raise ValidationError("change and reason are required.")

    s = db_session()
    user = require_user()
    vehicle = get_vehicle_or_404(s, vehicle_id)
    event = update_trust_score(
        s,
        vehicle,
        change,
        reason,
        "admin",
        details=payload.get("details") if isinstance(payload.get("details"), dict) else None,
        created_by=user,
        event_timestamp=parse_datetime(payload.get("eventTimestamp")),
    )
    record_event(
        s,
        actor=user,
        action="trust.manual_adjust",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        reason=reason,
        metadata={"change": change, "new_score": event.new_score},
    )
    s.commit()
    return {"success": True, "message": "Trust score adjusted", "data": event.to_dict()}
