from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.veridrive.models import Base
from app.veridrive.utils import utcnow


class TrustEvent(Base):
    __tablename__ = "trust_events"
    __table_args__ = (
        Index("idx_trust_events_vehicle_ts", "vehicle_id", "event_timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    change: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_score: Mapped[int] = mapped_column(Integer, nullable=False)
    new_score: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)  # telemetry, admin, manual, fraudEngine, anchor
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vehicleId": self.vehicle_id,
            "change": self.change,
            "previousScore": self.previous_score,
            "newScore": self.new_score,
            "reason": self.reason,
            "source": self.source,
            "details": self.details,
            "createdBy": self.created_by_user_id,
            "eventTimestamp": self.event_timestamp.isoformat() if self.event_timestamp else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
