from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.veridrive import constants as C
from app.veridrive.audit import record_event
from app.veridrive.errors import ConflictError, NotFoundError, ValidationError
from app.veridrive.modules.blockchain.solana_client import SolanaError
from app.veridrive.modules.blockchain.wallet import WalletError
from app.veridrive.modules.telemetry.models import Device, VehicleTelemetry
from app.veridrive.modules.vehicles.models import FraudAlert, Vehicle
from app.veridrive.utils import iso, parse_datetime, parse_float, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.veridrive.models import User

logger = logging.getLogger(__name__)


# --- classification --------------------------------------------------------


def classify_mileage(
    delta: int | None,
    *,
    tampering_detected: bool = False,
    already_flagged: bool = False,
    stored_status: str | None = None,
) -> tuple[str, bool]:
    """
    Classify one odometer reading. Returns (validation_status, flagged).
    A missing delta counts as not negative.
    """
    if delta is not None and delta < 0:
        return C.STATUS_ROLLBACK, True
    if delta is not None and delta > C.SUSPICIOUS_DELTA:
        return C.STATUS_SUSPICIOUS, True
    if tampering_detected or already_flagged:
        return stored_status or C.STATUS_INVALID, True
    return C.STATUS_VALID, False


def classify_record(rec: VehicleTelemetry) -> tuple[str, bool]:
    return classify_mileage(
        rec.delta,
        tampering_detected=rec.tampering_detected,
        already_flagged=rec.flagged,
        stored_status=rec.validation_status,
    )


def health_alerts(readings: dict[str, float | None]) -> list[dict[str, Any]]:
    alerts = []
    engine_temp = readings.get("engineTemp")
    if engine_temp is not None and engine_temp > C.MAX_ENGINE_TEMP:
        alerts.append({"type": "ENGINE_OVERHEAT", "severity": "high", "message": f"Engine temperature high: {engine_temp}°C"})
    battery = readings.get("batteryVoltage")
    if battery is not None and battery < C.MIN_BATTERY_VOLTAGE:
        alerts.append({"type": "LOW_BATTERY", "severity": "medium", "message": f"Battery voltage low: {battery}V"})
    rpm = readings.get("rpm")
    if rpm is not None and rpm > C.MAX_RPM:
        alerts.append({"type": "HIGH_RPM", "severity": "medium", "message": f"Engine RPM high: {rpm}"})
    fuel = readings.get("fuelLevel")
    if fuel is not None and fuel < C.MIN_FUEL_LEVEL:
        alerts.append({"type": "LOW_FUEL", "severity": "low", "message": f"Fuel level low: {fuel}%"})
    return alerts


# --- read side -------------------------------------------------------------


def fraud_alerts(s: "Session", vehicle_id: int, *, limit: int = 10) -> list[dict[str, Any]]:
    rows = (
        s.query(VehicleTelemetry)
        .filter(
            VehicleTelemetry.vehicle_id == vehicle_id,
            or_(
                VehicleTelemetry.tampering_detected.is_(True),
                VehicleTelemetry.validation_status.in_(sorted(C.FRAUD_STATUSES)),
                VehicleTelemetry.flagged.is_(True),
            ),
        )
        .order_by(VehicleTelemetry.received_at.desc(), VehicleTelemetry.id.desc())
        .limit(limit)
        .all()
    )
    out = []
    for r in rows:
        status = r.validation_status or "FRAUD_DETECTED"
        out.append(
            {
                "id": r.id,
                "type": status,
                "severity": "high" if r.validation_status == C.STATUS_ROLLBACK else "medium",
                "message": r.flag_reason or f"Odometer anomaly detected ({status})",
                "detectedAt": iso(r.received_at),
                "status": "active",
                "details": {
                    "expectedValue": r.previous_mileage or 0,
                    "actualValue": r.mileage,
                    "reason": r.flag_reason,
                    "deviceID": r.device_id,
                    "validationStatus": r.validation_status,
                },
            }
        )
    return out


def _obd_summary(r: VehicleTelemetry) -> dict[str, Any]:
    return {
        "deviceID": r.device_id,
        "status": r.device_status,
        "validationStatus": r.validation_status or C.STATUS_PENDING,
        "flagged": r.flagged,
        "lastReading": {
            "mileage": r.mileage,
            "speed": r.speed,
            "rpm": r.rpm,
            "engineTemp": r.engine_temp,
            "fuelLevel": r.fuel_level,
            "batteryVoltage": r.battery_voltage,
            "dataQuality": r.data_quality,
            "recordedAt": iso(r.recorded_at or r.received_at),
        },
        "tamperingDetected": r.tampering_detected,
        "fraudScore": 95 if r.tampering_detected else 10,
        "mileageValidation": {
            "previousMileage": r.previous_mileage,
            "newMileage": r.new_mileage,
            "delta": r.delta,
            "flagged": r.flagged,
            "reason": r.flag_reason,
        },
    }


def latest_obd(s: "Session", vehicle_id: int) -> dict[str, Any] | None:
    base = s.query(VehicleTelemetry).filter(VehicleTelemetry.vehicle_id == vehicle_id)
    order = (VehicleTelemetry.received_at.desc(), VehicleTelemetry.id.desc())
    latest = base.order_by(*order).first()
    if latest is None:
        return None
    non_flagged = base.filter(VehicleTelemetry.flagged.is_(False)).order_by(*order).first()
    return {
        "latest": _obd_summary(latest),
        "latestNonFlagged": _obd_summary(non_flagged) if non_flagged else None,
    }


def mileage_history(s: "Session", vehicle_id: int, *, limit: int = 50, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
    q = s.query(VehicleTelemetry).filter(VehicleTelemetry.vehicle_id == vehicle_id)
    total = q.count()
    rows = q.order_by(VehicleTelemetry.received_at.desc(), VehicleTelemetry.id.desc()).offset(offset).limit(limit).all()
    out = []
    for r in rows:
        status, flagged = classify_record(r)
        connection_error = r.validation_status == C.STATUS_CONNECTION_ERROR
        if connection_error:
            status = C.STATUS_CONNECTION_ERROR
        out.append(
            {
                "id": r.id,
                "mileage": r.mileage or 0,
                "recordedAt": iso(r.recorded_at or r.received_at),
                "source": r.data_source or "unknown",
                "verified": not (flagged or connection_error),
                "deviceId": r.device_id,
                "blockchainHash": r.blockchain_hash,
                "previousMileage": r.previous_mileage,
                "newMileage": r.new_mileage if r.new_mileage is not None else (r.mileage or 0),
                "delta": r.delta,
                "flagged": flagged,
                "validationStatus": status,
            }
        )
    return out, total


def last_telemetry(s: "Session", vehicle_id: int) -> VehicleTelemetry | None:
    return (
        s.query(VehicleTelemetry)
        .filter(VehicleTelemetry.vehicle_id == vehicle_id)
        .order_by(VehicleTelemetry.received_at.desc(), VehicleTelemetry.id.desc())
        .first()
    )


# --- devices ---------------------------------------------------------------


def get_device(s: "Session", device_id: str) -> Device | None:
    return s.query(Device).filter(Device.device_id == device_id).one_or_none()


def get_device_or_404(s: "Session", device_id: str) -> Device:
    device = get_device(s, device_id)
    if device is None:
        raise NotFoundError("Device not found")
    return device


def register_device(s: "Session", payload: dict, user: "User") -> Device:
    device_id = (payload.get("deviceID") or payload.get("deviceId") or "").strip()
    if not device_id:
        raise ValidationError("deviceID is required.")
    if get_device(s, device_id):
        raise ConflictError("Device already registered.")
    vehicle_id = parse_int(payload.get("vehicleId"), "vehicleId")
    if vehicle_id is not None and s.get(Vehicle, vehicle_id) is None:
        raise NotFoundError("Vehicle not found")
    device = Device(
        device_id=device_id,
        device_type=(payload.get("deviceType") or "ESP32_Telematics").strip(),
        status="inactive",
        vehicle_id=vehicle_id,
        firmware_version=(payload.get("firmwareVersion") or "").strip() or None,
    )
    s.add(device)
    s.flush()
    record_event(s, actor=user, action="device.register", entity_type="Device", entity_id=device_id)
    return device


def _resolve_vehicle(s: "Session", vin: str | None, device: Device) -> Vehicle | None:
    """A device already linked to a vehicle reports for that vehicle; the payload VIN cannot redirect it."""
    from app.veridrive.modules.installs.models import InstallationRequest

    vin = vin.strip().upper() if vin else None
    if device.vehicle_id is not None:
        linked = s.get(Vehicle, device.vehicle_id)
        if linked is not None:
            if vin and vin != linked.vin:
                logger.warning(
                    "Device %s reported VIN %s but is linked to vehicle %s (%s); using the linked vehicle",
                    device.device_id,
                    vin,
                    linked.id,
                    linked.vin,
                )
            return linked

    if vin:
        vehicle = s.query(Vehicle).filter(Vehicle.vin == vin).one_or_none()
        if vehicle is not None:
            return vehicle
    base = s.query(InstallationRequest).filter(InstallationRequest.device_id == device.device_id)
    req = (
        base.filter(InstallationRequest.status.in_(("in_progress", "assigned", "completed")))
        .order_by(InstallationRequest.updated_at.desc(), InstallationRequest.id.desc())
        .first()
    )
    if req is None:
        req = base.order_by(InstallationRequest.created_at.desc(), InstallationRequest.id.desc()).first()
    return req.vehicle if req is not None else None


# --- ingestion -------------------------------------------------------------


@dataclass
class IngestResult:
    telemetry: VehicleTelemetry
    vehicle: Vehicle | None
    flagged: bool = False
    reason: str | None = None
    alerts: list[dict[str, Any]] = field(default_factory=list)


def _readings(payload: dict) -> dict[str, float | None]:
    obd = payload.get("obd") if isinstance(payload.get("obd"), dict) else payload
    return {
        "mileage": parse_float(obd.get("mileage", obd.get("odometer")), "mileage"),
        "speed": parse_float(obd.get("speed"), "speed"),
        "rpm": parse_float(obd.get("rpm"), "rpm"),
        "engineTemp": parse_float(obd.get("engineTemp"), "engineTemp"),
        "fuelLevel": parse_float(obd.get("fuelLevel"), "fuelLevel"),
        "batteryVoltage": parse_float(payload.get("batteryVoltage", obd.get("batteryVoltage")), "batteryVoltage"),
        "dataQuality": parse_float(obd.get("dataQuality"), "dataQuality"),
    }


def ingest_device_status(s: "Session", payload: dict) -> IngestResult:
    """
    Persist one device report and run the odometer checks against the vehicle's last verified mileage.
    A rollback flags the record, raises a fraud alert and costs the vehicle 30 trust points.
    """
    device_id = (payload.get("deviceId") or payload.get("deviceID") or "").strip()
    status = (payload.get("status") or "").strip()
    timestamp = payload.get("timestamp")
    missing = [name for name, value in (("deviceID", device_id), ("status", status), ("timestamp", timestamp)) if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    now = utcnow()
    recorded_at = parse_datetime(timestamp)
    readings = _readings(payload)

    device = get_device(s, device_id)
    if device is None:
        device = Device(device_id=device_id, device_type="ESP32_Telematics", status="active")
        s.add(device)
        logger.info("Auto-registered device %s", device_id)
    device.last_seen = now
    if readings["batteryVoltage"] is not None:
        device.battery_voltage = readings["batteryVoltage"]
    boot_count = parse_int(payload.get("bootCount"), "bootCount")
    if boot_count is not None:
        device.boot_count = boot_count
    if payload.get("firmwareVersion"):
        device.firmware_version = str(payload["firmwareVersion"])[:32]
    device.status = "active" if status == "obd_connected" else "error"

    vin = (payload.get("vin") or payload.get("VIN") or "").strip() or None
    vehicle = _resolve_vehicle(s, vin, device)
    if vehicle is not None and device.vehicle_id is None:
        device.vehicle_id = vehicle.id

    mileage = int(readings["mileage"]) if readings["mileage"] is not None else None
    rec = VehicleTelemetry(
        device_id=device_id,
        vehicle_id=vehicle.id if vehicle else None,
        vin=vehicle.vin if vehicle else vin,
        device_status=status,
        mileage=mileage,
        speed=readings["speed"],
        rpm=readings["rpm"],
        engine_temp=readings["engineTemp"],
        fuel_level=readings["fuelLevel"],
        battery_voltage=readings["batteryVoltage"],
        data_quality=readings["dataQuality"],
        validation_status=C.STATUS_RECEIVED,
        tampering_detected=False,
        previous_mileage=0,
        new_mileage=mileage,
        delta=0,
        flagged=False,
        data_source=(payload.get("dataSource") or "device").strip(),
        recorded_at=recorded_at,
        received_at=now,
        raw_data={**payload, "receivedAt": iso(now)},
    )
    s.add(rec)
    s.flush()

    result = IngestResult(telemetry=rec, vehicle=vehicle, alerts=health_alerts(readings))

    if status == "device_not_connected":
        rec.validation_status = C.STATUS_CONNECTION_ERROR
        device.status = "error"
        return result

    if status != "obd_connected" or mileage is None or vehicle is None:
        return result

    previous = vehicle.last_verified_mileage if vehicle.last_verified_mileage is not None else vehicle.current_mileage
    delta = mileage - previous
    rec.previous_mileage = previous
    rec.delta = delta
    validation_status, flagged = classify_mileage(delta)
    rec.validation_status = validation_status
    rec.flagged = flagged

    if validation_status == C.STATUS_ROLLBACK:
        _flag_rollback(s, vehicle, device, rec, previous, mileage)
        result.flagged = True
        result.reason = rec.flag_reason
        return result

    if validation_status == C.STATUS_SUSPICIOUS:
        rec.flag_reason = f"Mileage jumped by {delta} (more than {C.SUSPICIOUS_DELTA}) since last verified reading"
        rec.validation_errors = [rec.flag_reason]
        logger.warning("Suspicious mileage jump (vehicle=%s device=%s delta=%s)", vehicle.id, device_id, delta)
        return result

    vehicle.last_verified_mileage = mileage
    vehicle.current_mileage = mileage
    vehicle.last_mileage_update = now
    _record_and_anchor(s, vehicle, rec, previous, mileage)
    return result


def _flag_rollback(s: "Session", vehicle: Vehicle, device: Device, rec: VehicleTelemetry, previous: int, mileage: int) -> None:
    from app.veridrive.modules.trust.service import update_trust_score

    reason = f"Odometer rollback: reported {mileage} is below last verified {previous}"
    rec.tampering_detected = True
    rec.flag_reason = reason
    rec.validation_errors = [reason]
    device.status = "error"
    logger.warning("FRAUD: %s (vehicle=%s device=%s)", reason, vehicle.id, device.device_id)

    alert = FraudAlert(
        vehicle_id=vehicle.id,
        alert_type="odometer_rollback",
        severity="high",
        description=reason,
        status="active",
    )
    s.add(alert)
    vehicle.fraud_alerts.append(alert)
    vehicle.verification_status = "flagged"
    update_trust_score(
        s,
        vehicle,
        C.ROLLBACK_TRUST_PENALTY,
        "Odometer rollback detected by device telemetry",
        "fraudEngine",
        details={"telemetryId": rec.id, "previousMileage": previous, "reportedMileage": mileage, "deviceId": device.device_id},
    )
    _notify_owner(s, vehicle, "Odometer rollback detected", reason)


def _record_and_anchor(s: "Session", vehicle: Vehicle, rec: VehicleTelemetry, previous: int, mileage: int) -> None:
    from app.veridrive.modules.blockchain.service import anchor_mileage
    from app.veridrive.modules.vehicles.service import add_mileage_record

    history = add_mileage_record(
        s,
        vehicle,
        mileage,
        source="automated",
        device_id=rec.device_id,
        notes="Device telemetry",
        verified=True,
    )
    try:
        tx = anchor_mileage(s, vehicle, previous_mileage=previous, new_mileage=mileage, source="automated", user=None)
        history.blockchain_hash = tx.signature
        rec.blockchain_hash = tx.signature
    except (SolanaError, WalletError) as e:
        logger.error("Mileage anchoring failed (vehicle=%s telemetry=%s): %s", vehicle.id, rec.id, e)


def _notify_owner(s: "Session", vehicle: Vehicle, title: str, message: str) -> None:
    from app.veridrive.modules.users.service import notify

    notify(s, vehicle.owner_id, title, message, notification_type="fraud")
