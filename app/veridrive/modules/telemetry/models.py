from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.veridrive.models import Base
from app.veridrive.utils import utcnow


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (
        Index("idx_devices_vehicle", "vehicle_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    device_type: Mapped[str] = mapped_column(String(64), nullable=False, default="ESP32_Telematics")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, inactive, error, installed
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    firmware_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    battery_voltage: Mapped[float | None] = mapped_column(Float, nullable=True)
    boot_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "deviceID": self.device_id,
            "deviceType": self.device_type,
            "status": self.status,
            "vehicleId": self.vehicle_id,
            "ownerId": self.owner_id,
            "firmwareVersion": self.firmware_version,
            "batteryVoltage": self.battery_voltage,
            "bootCount": self.boot_count,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "installedAt": self.installed_at.isoformat() if self.installed_at else None,
        }


class VehicleTelemetry(Base):
    """One OBD report from a device. Written once by ingestion, then read-only."""

    __tablename__ = "vehicle_telemetry"
    __table_args__ = (
        Index("idx_telemetry_vehicle_received", "vehicle_id", "received_at"),
        Index("idx_telemetry_device", "device_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=True)
    vin: Mapped[str | None] = mapped_column(String(17), nullable=True)
    device_status: Mapped[str] = mapped_column(String(32), nullable=False)  # obd_connected, device_not_connected, ...

    # OBD readings
    mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    rpm: Mapped[float | None] = mapped_column(Float, nullable=True)
    engine_temp: Mapped[float | None] = mapped_column(Float, nullable=True)
    fuel_level: Mapped[float | None] = mapped_column(Float, nullable=True)
    battery_voltage: Mapped[float | None] = mapped_column(Float, nullable=True)
    data_quality: Mapped[float | None] = mapped_column(Float, nullable=True)

    # validation
    validation_status: Mapped[str] = mapped_column(String(32), nullable=False, default="RECEIVED")
    tampering_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validation_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # mileage validation
    previous_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    data_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    blockchain_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)  # device clock
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class TelemetryBatch(Base):
    """One vehicle's readings for one UTC day, reduced to driving segments and a Merkle root anchored on Solana."""

    __tablename__ = "telemetry_batches"
    __table_args__ = (
        UniqueConstraint("vehicle_id", "batch_date", name="uq_telemetry_batches_vehicle_date"),
        Index("idx_telemetry_batches_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    batch_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="consolidating")  # consolidating, anchored, error
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    segments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    segments_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_distance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    merkle_root: Mapped[str] = mapped_column(String(64), nullable=False)
    solana_tx: Mapped[str | None] = mapped_column(String(128), nullable=True)
    simulated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vehicleId": self.vehicle_id,
            "deviceId": self.device_id,
            "date": self.batch_date.isoformat(),
            "status": self.status,
            "recordCount": self.record_count,
            "segments": self.segments or [],
            "segmentsCount": self.segments_count,
            "totalDistance": self.total_distance,
            "firstMileage": self.first_mileage,
            "lastMileage": self.last_mileage,
            "merkleRoot": self.merkle_root,
            "solanaTx": self.solana_tx,
            "simulated": self.simulated,
            "lastError": self.last_error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
