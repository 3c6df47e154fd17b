from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.veridrive.models import Base
from app.veridrive.utils import utcnow

if TYPE_CHECKING:
    from app.veridrive.modules.vehicles.models import Vehicle


class InstallationRequest(Base):
    __tablename__ = "installation_requests"
    __table_args__ = (
        Index("idx_install_requests_vehicle_status", "vehicle_id", "status"),
        Index("idx_install_requests_owner", "owner_id"),
        Index("idx_install_requests_provider", "service_provider_id"),
        Index("idx_install_requests_device", "device_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    service_provider_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="requested")  # requested, assigned, in_progress, completed, cancelled
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    preferred_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # [{action, by, at, meta}], appended on every transition
    history: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    vehicle: Mapped["Vehicle"] = relationship("Vehicle", lazy="joined")

    def to_dict(self) -> dict:
        v = self.vehicle
        return {
            "id": self.id,
            "vehicleId": self.vehicle_id,
            "vehicle": {"vin": v.vin, "make": v.make, "model": v.model, "year": v.year} if v else None,
            "ownerId": self.owner_id,
            "serviceProviderId": self.service_provider_id,
            "deviceId": self.device_id,
            "status": self.status,
            "notes": self.notes,
            "preferredDate": self.preferred_date.isoformat() if self.preferred_date else None,
            "scheduledAt": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "installedAt": self.installed_at.isoformat() if self.installed_at else None,
            "cancelledAt": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancelReason": self.cancel_reason,
            "history": list(self.history or []),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
