from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.veridrive.models import Base
from app.veridrive.utils import utcnow


class PurchaseRequest(Base):
    __tablename__ = "purchase_requests"
    __table_args__ = (
        Index("idx_purchase_requests_buyer", "buyer_id", "status"),
        Index("idx_purchase_requests_seller", "seller_id", "status"),
        Index("idx_purchase_requests_vehicle", "vehicle_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    price: Mapped[float] = mapped_column(Float, nullable=False)
    counter_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    seller_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_seller")
    verification_results: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    escrows: Mapped[list["Escrow"]] = relationship("Escrow", back_populates="purchase_request", lazy="selectin")

    @property
    def agreed_price(self) -> float:
        return self.counter_price if self.counter_price is not None else self.price

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "listingId": self.listing_id,
            "vehicleId": self.vehicle_id,
            "buyerId": self.buyer_id,
            "sellerId": self.seller_id,
            "price": self.price,
            "counterPrice": self.counter_price,
            "agreedPrice": self.agreed_price,
            "message": self.message,
            "sellerMessage": self.seller_message,
            "status": self.status,
            "verificationResults": self.verification_results,
            "transactionHash": self.transaction_hash,
            "escrow": self.escrows[-1].to_dict() if self.escrows else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class Escrow(Base):
    __tablename__ = "escrows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purchase_request_id: Mapped[int] = mapped_column(ForeignKey("purchase_requests.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, funded, released, refunded
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    purchase_request: Mapped[PurchaseRequest] = relationship("PurchaseRequest", back_populates="escrows")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "status": self.status,
            "idempotencyKey": self.idempotency_key,
            "fundedAt": self.funded_at.isoformat() if self.funded_at else None,
            "releasedAt": self.released_at.isoformat() if self.released_at else None,
        }


class SaleRecord(Base):
    __tablename__ = "sale_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purchase_request_id: Mapped[int | None] = mapped_column(ForeignKey("purchase_requests.id", ondelete="SET NULL"), nullable=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    seller_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    buyer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sold_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
