from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING

from app.veridrive.audit import record_event
from app.veridrive.constants import MILEAGE_SOURCES, VEHICLE_CONDITIONS
from app.veridrive.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.veridrive.modules.vehicles.models import MileageHistory, Vehicle
from app.veridrive.utils import parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.veridrive.models import User

logger = logging.getLogger(__name__)

VIN_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
VEHICLE_NUMBER_RE = re.compile(r"^[A-Z0-9]{4,20}$")
MAX_MILEAGE = 9_999_999


def normalize_vin(raw: str | None) -> str:
    return (raw or "").strip().upper()


def validate_vehicle_payload(payload: dict) -> list[str]:
    """Validate vehicle registration payload. Returns list of errors."""
    errors = []
    vin = normalize_vin(payload.get("vin"))
    if not VIN_RE.match(vin):
        errors.append("VIN must be 17 characters long and contain only valid characters.")
    number = (payload.get("vehicleNumber") or "").strip().upper()
    if number and not VEHICLE_NUMBER_RE.match(number):
        errors.append("Vehicle number must contain 4-20 alphanumeric characters.")
    for field in ("make", "model"):
        if not (payload.get(field) or "").strip():
            errors.append(f"{field} is required.")
    try:
        year = int(payload.get("year"))
        if year < 1900 or year > utcnow().year + 2:
            errors.append("Year must be between 1900 and two years from now.")
    except (TypeError, ValueError):
        errors.append("year must be an integer.")
    try:
        mileage = int(payload.get("currentMileage", payload.get("mileage", 0)) or 0)
        if mileage < 0 or mileage > MAX_MILEAGE:
            errors.append("Mileage must be between 0 and 9,999,999.")
    except (TypeError, ValueError):
        errors.append("currentMileage must be an integer.")
    condition = (payload.get("condition") or "good").strip().lower()
    if condition not in VEHICLE_CONDITIONS:
        errors.append(f"Invalid condition. Must be one of: {', '.join(VEHICLE_CONDITIONS)}")
    return errors


def get_vehicle_or_404(s: "Session", vehicle_id: int) -> Vehicle:
    vehicle = s.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFoundError("Vehicle not found")
    return vehicle


def require_owner_or_admin(vehicle: Vehicle, user: "User", role: str | None) -> None:
    if vehicle.owner_id != user.id and role != "admin":
        raise AuthorizationError("Access denied. You do not own this vehicle.")


def add_mileage_record(
    s: "Session",
    vehicle: Vehicle,
    mileage: int,
    *,
    source: str,
    user: "User | None" = None,
    device_id: str | None = None,
    notes: str | None = None,
    verified: bool = False,
    recorded_at: datetime | None = None,
) -> MileageHistory:
    if source not in MILEAGE_SOURCES:
        raise ValidationError(f"Invalid mileage source: {source}")
    rec = MileageHistory(
        vehicle_id=vehicle.id,
        mileage=mileage,
        recorded_by_user_id=user.id if user else None,
        recorded_at=recorded_at or utcnow(),
        source=source,
        device_id=device_id,
        notes=notes,
        verified=verified,
    )
    s.add(rec)
    vehicle.mileage_history.append(rec)
    return rec


def register_vehicle(s: "Session", payload: dict, user: "User") -> Vehicle:
    """Register a vehicle for the caller. The initial odometer reading becomes the first history row."""
    errors = validate_vehicle_payload(payload)
    if errors:
        raise ValidationError(errors[0], details=errors)
    vin = normalize_vin(payload.get("vin"))
    if s.query(Vehicle).filter(Vehicle.vin == vin).one_or_none():
        raise ConflictError("A vehicle with this VIN is already registered.")

    mileage = int(payload.get("currentMileage", payload.get("mileage", 0)) or 0)
    now = utcnow()
    vehicle = Vehicle(
        vin=vin,
        vehicle_number=(payload.get("vehicleNumber") or "").strip().upper() or None,
        owner_id=user.id,
        make=payload["make"].strip(),
        model=payload["model"].strip(),
        year=int(payload["year"]),
        color=(payload.get("color") or "").strip() or None,
        body_type=(payload.get("bodyType") or "").strip().lower() or None,
        fuel_type=(payload.get("fuelType") or "").strip().lower() or None,
        transmission=(payload.get("transmission") or "").strip().lower() or None,
        condition=(payload.get("condition") or "good").strip().lower(),
        current_mileage=mileage,
        last_verified_mileage=mileage,
        last_mileage_update=now,
        trust_score=100,
    )
    s.add(vehicle)
    s.flush()
    add_mileage_record(s, vehicle, mileage, source="owner", user=user, notes="Initial registration", recorded_at=now)

    record_event(
        s,
        actor=user,
        action="vehicle.register",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        metadata={"vin": vin, "mileage": mileage},
    )
    return vehicle


def record_manual_mileage(s: "Session", vehicle: Vehicle, payload: dict, user: "User") -> MileageHistory:
    """Owner/service odometer entry. A reading below the current odometer is refused as a rollback."""
    mileage = parse_int(payload.get("mileage"), "mileage", minimum=0)
    if mileage is None:
        raise ValidationError("mileage is required.")
    source = (payload.get("source") or "owner").strip()
    if mileage < vehicle.current_mileage:
        logger.warning("Manual mileage rollback refused (vehicle=%s current=%s reported=%s)", vehicle.id, vehicle.current_mileage, mileage)
        raise ValidationError(
            f"Mileage cannot decrease (current {vehicle.current_mileage}, reported {mileage}).",
            status_code=422,
        )
    rec = add_mileage_record(
        s,
        vehicle,
        mileage,
        source=source,
        user=user,
        notes=(payload.get("notes") or "").strip() or None,
        verified=source in ("service", "inspection", "government"),
    )
    vehicle.current_mileage = mileage
    vehicle.last_mileage_update = rec.recorded_at
    s.flush()
    record_event(
        s,
        actor=user,
        action="vehicle.mileage_update",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        metadata={"mileage": mileage, "source": source},
    )
    return rec
