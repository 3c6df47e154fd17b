from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.veridrive.audit import record_event
from app.veridrive.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.veridrive.models import User
from app.veridrive.modules.installs.models import InstallationRequest
from app.veridrive.modules.vehicles.models import Vehicle
from app.veridrive.utils import iso, parse_datetime, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

INSTALL_STATUSES = ("requested", "assigned", "in_progress", "completed", "cancelled")
OPEN_STATUSES = ("requested", "assigned")


def _append_history(req: InstallationRequest, action: str, user: User, meta: dict[str, Any] | None = None) -> None:
    # JSON columns only detect reassignment, not in-place mutation
    req.history = [*(req.history or []), {"action": action, "by": user.id, "at": iso(utcnow()), "meta": meta or {}}]


def _require_status(req: InstallationRequest, allowed: tuple[str, ...], action: str) -> None:
    if req.status not in allowed:
        raise ValidationError(f"Cannot {action} a request with status '{req.status}'. Allowed: {', '.join(allowed)}")


def get_request_or_404(s: "Session", request_id: int) -> InstallationRequest:
    req = s.get(InstallationRequest, request_id)
    if req is None:
        raise NotFoundError("Installation request not found")
    return req


def can_view(req: InstallationRequest, user: User, role: str | None) -> bool:
    if role == "admin":
        return True
    if role == "service":
        return req.service_provider_id == user.id
    return req.owner_id == user.id


def create_request(s: "Session", user: User, payload: dict[str, Any]) -> InstallationRequest:
    vehicle_id = parse_int(payload.get("vehicleId"), "vehicleId")
    if vehicle_id is None:
        raise ValidationError("vehicleId is required.")
    vehicle = s.get(Vehicle, vehicle_id)
    if vehicle is None or vehicle.owner_id != user.id:
        raise NotFoundError("Vehicle not found or not owned by user")
    existing = (
        s.query(InstallationRequest)
        .filter(InstallationRequest.vehicle_id == vehicle.id, InstallationRequest.status.in_(OPEN_STATUSES))
        .first()
    )
    if existing is not None:
        raise ConflictError("An open installation request already exists for this vehicle.", details={"requestId": existing.id})

    req = InstallationRequest(
        vehicle_id=vehicle.id,
        owner_id=user.id,
        status="requested",
        notes=(payload.get("notes") or "").strip() or None,
        preferred_date=parse_datetime(payload.get("preferredDate")),
    )
    _append_history(req, "requested", user)
    s.add(req)
    s.flush()
    record_event(s, actor=user, action="install.create", entity_type="InstallationRequest", entity_id=str(req.id))
    return req


def list_requests(
    s: "Session",
    user: User,
    role: str | None,
    *,
    owner_id: int | None = None,
    status: str | None = None,
    q: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    query = s.query(InstallationRequest).join(Vehicle, InstallationRequest.vehicle_id == Vehicle.id)
    if role == "admin":
        if owner_id is not None:
            query = query.filter(InstallationRequest.owner_id == owner_id)
    elif role == "service":
        query = query.filter(InstallationRequest.service_provider_id == user.id)
    else:
        query = query.filter(InstallationRequest.owner_id == user.id)
    if status:
        if status not in INSTALL_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(INSTALL_STATUSES)}")
        query = query.filter(InstallationRequest.status == status)
    if q:
        like = f"%{q.strip().lower()}%"
        query = query.filter(
            or_(
                func.lower(Vehicle.vin).like(like),
                func.lower(Vehicle.make).like(like),
                func.lower(Vehicle.model).like(like),
                func.lower(func.coalesce(InstallationRequest.device_id, "")).like(like),
            )
        )
    total = query.count()
    rows = (
        query.order_by(InstallationRequest.created_at.desc(), InstallationRequest.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "requests": [r.to_dict() for r in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": (total + limit - 1) // limit,
    }


def summary(s: "Session", user: User, role: str | None) -> dict[str, int]:
    query = s.query(InstallationRequest.status, func.count(InstallationRequest.id))
    if role == "service":
        query = query.filter(InstallationRequest.service_provider_id == user.id)
    elif role != "admin":
        query = query.filter(InstallationRequest.owner_id == user.id)
    counts = dict(query.group_by(InstallationRequest.status).all())
    out = {st: int(counts.get(st, 0)) for st in INSTALL_STATUSES}
    out["total"] = sum(out.values())
    return out


def owner_vehicles(s: "Session", owner_id: int) -> list[Vehicle]:
    return s.query(Vehicle).filter(Vehicle.owner_id == owner_id).order_by(Vehicle.created_at.desc()).all()


def search_vehicles(s: "Session", q: str, *, limit: int = 20) -> list[Vehicle]:
    q = (q or "").strip()
    if not q:
        return []
    like = f"%{q.lower()}%"
    return (
        s.query(Vehicle)
        .filter(
            or_(
                func.lower(Vehicle.vin).like(like),
                func.lower(func.coalesce(Vehicle.vehicle_number, "")).like(like),
                func.lower(Vehicle.make).like(like),
                func.lower(Vehicle.model).like(like),
            )
        )
        .order_by(Vehicle.vin.asc())
        .limit(limit)
        .all()
    )


def assign(s: "Session", req: InstallationRequest, admin: User, payload: dict[str, Any]) -> InstallationRequest:
    provider_id = parse_int(payload.get("serviceProviderId"), "serviceProviderId")
    if provider_id is None:
        raise ValidationError("serviceProviderId is required.")
    _require_status(req, ("requested",), "assign")
    provider = s.get(User, provider_id)
    if provider is None or "service" not in provider.role_keys:
        raise ValidationError("serviceProviderId must reference a service provider.")

    req.service_provider_id = provider.id
    device_id = (payload.get("deviceId") or "").strip()
    if device_id:
        req.device_id = device_id
    req.scheduled_at = parse_datetime(payload.get("scheduledAt")) or req.preferred_date
    req.status = "assigned"
    _append_history(req, "assigned", admin, {"serviceProviderId": provider.id, "deviceId": req.device_id})
    s.flush()

    from app.veridrive.modules.users.service import notify

    notify(s, provider.id, "Installation assigned", f"Installation request #{req.id} has been assigned to you.")
    notify(s, req.owner_id, "Installation scheduled", f"A service provider has been assigned to request #{req.id}.")
    record_event(
        s,
        actor=admin,
        action="install.assign",
        entity_type="InstallationRequest",
        entity_id=str(req.id),
        metadata={"service_provider_id": provider.id, "device_id": req.device_id},
    )
    return req


def start(s: "Session", req: InstallationRequest, user: User, role: str | None) -> InstallationRequest:
    if role != "admin" and req.service_provider_id != user.id:
        raise AuthorizationError("Only the assigned service provider can start this installation.")
    _require_status(req, ("assigned",), "start")
    req.status = "in_progress"
    req.started_at = utcnow()
    _append_history(req, "started", user)
    s.flush()
    record_event(s, actor=user, action="install.start", entity_type="InstallationRequest", entity_id=str(req.id))
    return req


def complete(s: "Session", req: InstallationRequest, user: User, role: str | None, payload: dict[str, Any]) -> InstallationRequest:
    from app.veridrive.modules.telemetry.models import Device
    from app.veridrive.modules.telemetry.service import get_device

    if role == "service" and req.service_provider_id != user.id:
        raise AuthorizationError("Only the assigned service provider can complete this installation.")
    _require_status(req, ("assigned", "in_progress"), "complete")

    device_id = (payload.get("deviceId") or "").strip() or req.device_id
    if not device_id:
        raise ValidationError("deviceId is required to complete an installation.")
    now = utcnow()
    req.device_id = device_id
    req.status = "completed"
    req.installed_at = now

    device = get_device(s, device_id)
    if device is None:
        device = Device(device_id=device_id, device_type="ESP32_Telematics")
        s.add(device)
    device.status = "installed"
    device.vehicle_id = req.vehicle_id
    device.owner_id = req.owner_id
    device.installed_at = now

    _append_history(req, "completed", user, {"deviceId": device_id, "notes": (payload.get("notes") or "").strip() or None})
    s.flush()

    from app.veridrive.modules.users.service import notify

    notify(s, req.owner_id, "Device installed", f"Device {device_id} has been installed on your vehicle.")
    record_event(
        s,
        actor=user,
        action="install.complete",
        entity_type="InstallationRequest",
        entity_id=str(req.id),
        metadata={"device_id": device_id, "vehicle_id": req.vehicle_id},
    )
    logger.info("Installation completed (request=%s device=%s vehicle=%s)", req.id, device_id, req.vehicle_id)
    return req


def cancel(s: "Session", req: InstallationRequest, user: User, role: str | None, reason: str | None) -> InstallationRequest:
    if role != "admin" and req.owner_id != user.id:
        raise AuthorizationError("Only the owner can cancel this installation request.")
    _require_status(req, ("requested", "assigned", "in_progress"), "cancel")
    req.status = "cancelled"
    req.cancelled_at = utcnow()
    req.cancel_reason = (reason or "").strip() or None
    _append_history(req, "cancelled", user, {"reason": req.cancel_reason})
    s.flush()
    record_event(
        s,
        actor=user,
        action="install.cancel",
        entity_type="InstallationRequest",
        entity_id=str(req.id),
        reason=req.cancel_reason,
    )
    return req
