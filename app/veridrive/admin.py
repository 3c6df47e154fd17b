from flask import Blueprint, request
from sqlalchemy import func, or_

from app.veridrive.audit import record_event
from app.veridrive.constants import ACCOUNT_STATUSES, FRAUD_ALERT_STATUSES, ROLES
from app.veridrive.db import db_session
from app.veridrive.errors import NotFoundError, ValidationError
from app.veridrive.models import Role, User
from app.veridrive.modules.installs.models import InstallationRequest
from app.veridrive.modules.marketplace.models import Listing
from app.veridrive.modules.vehicles.models import FraudAlert, Vehicle
from app.veridrive.rbac import require_role, require_user
from app.veridrive.utils import json_body, page_args, utcnow

bp = Blueprint("admin", __name__)


def _user_or_404(s, user_id: int) -> User:
    user = s.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


@bp.get("/dashboard")
@require_role("admin")
def dashboard():
    s = db_session()
    users_by_role = dict(
        s.query(Role.key, func.count(User.id)).join(Role.users).group_by(Role.key).all()
    )
    installs_by_status = dict(
        s.query(InstallationRequest.status, func.count(InstallationRequest.id)).group_by(InstallationRequest.status).all()
    )
    return {
        "success": True,
        "data": {
            "users": {
                "total": s.query(func.count(User.id)).scalar() or 0,
                "byRole": {r: int(users_by_role.get(r, 0)) for r in ROLES},
            },
            "vehicles": {
                "total": s.query(func.count(Vehicle.id)).scalar() or 0,
                "flagged": s.query(func.count(Vehicle.id)).filter(Vehicle.verification_status == "flagged").scalar() or 0,
                "forSale": s.query(func.count(Vehicle.id)).filter(Vehicle.is_for_sale.is_(True)).scalar() or 0,
            },
            "fraudAlerts": {
                "active": s.query(func.count(FraudAlert.id)).filter(FraudAlert.status == "active").scalar() or 0,
            },
            "listings": {
                "total": s.query(func.count(Listing.id)).scalar() or 0,
                "active": s.query(func.count(Listing.id)).filter(Listing.status == "active").scalar() or 0,
            },
            "installs": {k: int(v) for k, v in installs_by_status.items()},
        },
    }


# ---------- Users ----------
@bp.get("/users")
@require_role("admin")
def users_list():
    s = db_session()
    page, limit = page_args()
    q = s.query(User)
    role = (request.args.get("role") or "").strip()
    if role:
        q = q.filter(User.roles.any(Role.key == role))
    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(User.account_status == status)
    search = (request.args.get("q") or "").strip().lower()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                func.lower(User.email).like(like),
                func.lower(User.first_name).like(like),
                func.lower(User.last_name).like(like),
            )
        )
    total = q.count()
    users = q.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "success": True,
        "data": {
            "users": [u.to_dict() for u in users],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": (total + limit - 1) // limit,
        },
    }


@bp.get("/users/<int:user_id>")
@require_role("admin")
def user_detail(user_id: int):
    s = db_session()
    user = _user_or_404(s, user_id)
    vehicles = s.query(Vehicle).filter(Vehicle.owner_id == user.id).all()
    data = user.to_dict()
    data["vehicles"] = [v.to_dict() for v in vehicles]
    data["lockedUntil"] = user.locked_until.isoformat() if user.locked_until else None
    return {"success": True, "data": data}


@bp.patch("/users/<int:user_id>/status")
@require_role("admin")
def user_status(user_id: int):
    s = db_session()
    admin = require_user()
    user = _user_or_404(s, user_id)
    payload = json_body()
    status = (payload.get("status") or "").strip().lower()
    if status not in ACCOUNT_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(sorted(ACCOUNT_STATUSES))}")
    if user.id == admin.id and status != "active":
        raise ValidationError("You cannot deactivate your own account.")
    before = user.account_status
    user.account_status = status
    user.is_active = status == "active"
    if status != "active":
        user.token_version += 1
    record_event(
        s,
        actor=admin,
        action="admin.user_status",
        entity_type="User",
        entity_id=str(user.id),
        reason=(payload.get("reason") or "").strip() or None,
        metadata={"before": before, "after": status},
    )
    s.commit()
    return {"success": True, "message": "User status updated", "data": user.to_dict()}


@bp.delete("/users/<int:user_id>")
@require_role("admin")
def user_delete(user_id: int):
    s = db_session()
    admin = require_user()
    user = _user_or_404(s, user_id)
    if user.id == admin.id:
        raise ValidationError("You cannot delete your own account.")
    user.account_status = "inactive"
    user.is_active = False
    user.token_version += 1
    record_event(s, actor=admin, action="admin.user_delete", entity_type="User", entity_id=str(user.id))
    s.commit()
    return {"success": True, "message": "User deactivated"}


# ---------- Vehicles / fraud ----------
@bp.get("/vehicles/stats")
@require_role("admin")
def vehicle_stats():
    s = db_session()
    by_status = dict(s.query(Vehicle.verification_status, func.count(Vehicle.id)).group_by(Vehicle.verification_status).all())
    avg_trust = s.query(func.avg(Vehicle.trust_score)).scalar()
    low_trust = s.query(func.count(Vehicle.id)).filter(Vehicle.trust_score < 50).scalar() or 0
    by_make = s.query(Vehicle.make, func.count(Vehicle.id)).group_by(Vehicle.make).order_by(func.count(Vehicle.id).desc()).limit(10).all()
    return {
        "success": True,
        "data": {
            "total": sum(by_status.values()),
            "byVerificationStatus": {k: int(v) for k, v in by_status.items()},
            "averageTrustScore": int(avg_trust + 0.5) if avg_trust is not None else None,
            "lowTrustVehicles": low_trust,
            "topMakes": [{"make": m, "count": int(c)} for m, c in by_make],
        },
    }


@bp.patch("/fraud-alerts/<int:alert_id>")
@require_role("admin")
def fraud_alert_update(alert_id: int):
    s = db_session()
    admin = require_user()
    alert = s.get(FraudAlert, alert_id)
    if alert is None:
        raise NotFoundError("Fraud alert not found")
    payload = json_body()
    status = (payload.get("status") or "").strip().lower()
    if status not in FRAUD_ALERT_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(sorted(FRAUD_ALERT_STATUSES))}")
    before = alert.status
    alert.status = status
    notes = (payload.get("notes") or payload.get("investigationNotes") or "").strip()
    if notes:
        alert.investigation_notes = notes
    if status in ("resolved", "false_positive"):
        alert.resolved_at = utcnow()
        alert.resolved_by_user_id = admin.id
    record_event(
        s,
        actor=admin,
        action="admin.fraud_alert",
        entity_type="FraudAlert",
        entity_id=str(alert.id),
        reason=notes or None,
        metadata={"before": before, "after": status, "vehicle_id": alert.vehicle_id},
    )
    s.commit()
    return {"success": True, "data": alert.to_dict()}
