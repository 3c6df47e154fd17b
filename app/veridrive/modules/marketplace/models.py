from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.veridrive.models import Base
from app.veridrive.utils import utcnow

if TYPE_CHECKING:
    from app.veridrive.modules.vehicles.models import Vehicle


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("idx_listings_vehicle_status", "vehicle_id", "status"),
        Index("idx_listings_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    price: Mapped[float] = mapped_column(Float, nullable=False)
    negotiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    features: Mapped[list | None] = mapped_column(JSON, nullable=True)
    condition: Mapped[str] = mapped_column(String(32), nullable=False, default="good")
    contact_preference: Mapped[str] = mapped_column(String(32), nullable=False, default="platform")
    available_for_inspection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    inspection_location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")  # active, removed, sold
    removal_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    history_report: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    vehicle: Mapped["Vehicle"] = relationship("Vehicle", lazy="joined")

    def to_dict(self, *, include_report: bool = False) -> dict:
        out = {
            "id": self.id,
            "vehicleId": self.vehicle_id,
            "sellerId": self.seller_id,
            "price": self.price,
            "negotiable": self.negotiable,
            "description": self.description,
            "features": self.features or [],
            "condition": self.condition,
            "contactPreference": self.contact_preference,
            "availableForInspection": self.available_for_inspection,
            "inspectionLocation": self.inspection_location,
            "status": self.status,
            "views": self.views,
            "listedAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.removal_reason:
            out["removalReason"] = self.removal_reason
        if include_report:
            out["historyReport"] = self.history_report
        return out
