from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.veridrive.models import Base
from app.veridrive.utils import utcnow

if TYPE_CHECKING:
    from app.veridrive.models import User


class Vehicle(Base):
    __tablename__ = "vehicles"
    __table_args__ = (
        Index("idx_vehicles_owner", "owner_id"),
        Index("idx_vehicles_trust_score", "trust_score"),
        Index("idx_vehicles_for_sale", "is_for_sale", "listing_status"),
        Index("idx_vehicles_make_model", "make", "model"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Identity
    vin: Mapped[str] = mapped_column(String(17), nullable=False, unique=True)
    vehicle_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    make: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[str | None] = mapped_column(String(30), nullable=True)
    body_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fuel_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(32), nullable=True)
    condition: Mapped[str] = mapped_column(String(32), nullable=False, default="good")  # excellent, good, fair, poor

    # Odometer
    current_mileage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_verified_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_mileage_update: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    # Verification / trust
    verification_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    trust_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    last_trust_score_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    trust_history_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Marketplace
    is_for_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    listing_status: Mapped[str] = mapped_column(String(32), nullable=False, default="not_listed")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Chain anchoring
    blockchain_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    blockchain_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    owner: Mapped["User"] = relationship("User", foreign_keys=[owner_id], lazy="joined")
    mileage_history: Mapped[list["MileageHistory"]] = relationship(
        "MileageHistory",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="MileageHistory.recorded_at",
        lazy="selectin",
    )
    fraud_alerts: Mapped[list["FraudAlert"]] = relationship(
        "FraudAlert",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="FraudAlert.reported_at",
        lazy="selectin",
    )
    service_records: Mapped[list["ServiceRecord"]] = relationship(
        "ServiceRecord",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="ServiceRecord.service_date",
        lazy="selectin",
    )
    accidents: Mapped[list["AccidentRecord"]] = relationship(
        "AccidentRecord",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    ownership_history: Mapped[list["OwnershipHistory"]] = relationship(
        "OwnershipHistory",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="OwnershipHistory.transfer_date",
        lazy="selectin",
    )

    @property
    def active_fraud_alerts(self) -> list["FraudAlert"]:
        return [a for a in self.fraud_alerts if a.status == "active"]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vin": self.vin,
            "vehicleNumber": self.vehicle_number,
            "ownerId": self.owner_id,
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "color": self.color,
            "bodyType": self.body_type,
            "fuelType": self.fuel_type,
            "transmission": self.transmission,
            "condition": self.condition,
            "currentMileage": self.current_mileage,
            "lastVerifiedMileage": self.last_verified_mileage,
            "lastMileageUpdate": self.last_mileage_update.isoformat() if self.last_mileage_update else None,
            "verificationStatus": self.verification_status,
            "trustScore": self.trust_score,
            "isForSale": self.is_for_sale,
            "listingStatus": self.listing_status,
            "blockchainHash": self.blockchain_hash,
            "activeFraudAlerts": len(self.active_fraud_alerts),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class MileageHistory(Base):
    __tablename__ = "mileage_history"
    __table_args__ = (
        Index("idx_mileage_history_vehicle", "vehicle_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    mileage: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="owner")  # owner, service, inspection, government, automated
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blockchain_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    vehicle: Mapped[Vehicle] = relationship("Vehicle", back_populates="mileage_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mileage": self.mileage,
            "recordedAt": self.recorded_at.isoformat() if self.recorded_at else None,
            "recordedBy": self.recorded_by_user_id,
            "source": self.source,
            "deviceId": self.device_id,
            "notes": self.notes,
            "verified": self.verified,
            "blockchainHash": self.blockchain_hash,
        }


class FraudAlert(Base):
    __tablename__ = "fraud_alerts"
    __table_args__ = (
        Index("idx_fraud_alerts_vehicle_status", "vehicle_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")  # low, medium, high, critical
    description: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    reported_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reported_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    investigation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    vehicle: Mapped[Vehicle] = relationship("Vehicle", back_populates="fraud_alerts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vehicleId": self.vehicle_id,
            "alertType": self.alert_type,
            "severity": self.severity,
            "description": self.description,
            "status": self.status,
            "reportedAt": self.reported_at.isoformat() if self.reported_at else None,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "investigationNotes": self.investigation_notes,
        }


class ServiceRecord(Base):
    __tablename__ = "service_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    service_provider_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)  # maintenance, repair, inspection, modification, other
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    mileage_at_service: Mapped[int | None] = mapped_column(Integer, nullable=True)
    service_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    vehicle: Mapped[Vehicle] = relationship("Vehicle", back_populates="service_records")


class AccidentRecord(Base):
    __tablename__ = "accident_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    accident_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)  # minor, moderate, major, total_loss
    repair_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    vehicle: Mapped[Vehicle] = relationship("Vehicle", back_populates="accidents")


class OwnershipHistory(Base):
    __tablename__ = "ownership_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    from_owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    to_owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    transfer_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    sale_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    vehicle: Mapped[Vehicle] = relationship("Vehicle", back_populates="ownership_history")

    def to_dict(self) -> dict:
        return {
            "fromOwnerId": self.from_owner_id,
            "toOwnerId": self.to_owner_id,
            "transferDate": self.transfer_date.isoformat() if self.transfer_date else None,
            "salePrice": self.sale_price,
            "transactionHash": self.transaction_hash,
        }
