from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.veridrive.models import Base
from app.veridrive.utils import utcnow


class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    public_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # AES-GCM sealed secret key: base64(salt|nonce|ciphertext)
    encrypted_secret_key: Mapped[str] = mapped_column(Text, nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False, default="devnet")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class BlockchainTransaction(Base):
    __tablename__ = "blockchain_transactions"
    __table_args__ = (
        Index("idx_chain_tx_vehicle", "vehicle_id", "created_at"),
        Index("idx_chain_tx_user", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    signature: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    tx_type: Mapped[str] = mapped_column(String(32), nullable=False)  # REGISTER_VEHICLE, UPDATE_MILEAGE, TRANSFER_OWNERSHIP
    memo: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed")
    network: Mapped[str] = mapped_column(String(32), nullable=False, default="devnet")
    simulated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "type": self.tx_type,
            "vehicleId": self.vehicle_id,
            "userId": self.user_id,
            "memo": self.memo,
            "status": self.status,
            "network": self.network,
            "simulated": self.simulated,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class ArweaveDocument(Base):
    __tablename__ = "arweave_documents"
    __table_args__ = (
        Index("idx_arweave_docs_vehicle", "vehicle_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    document_type: Mapped[str] = mapped_column(String(64), nullable=False, default="other")
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    simulated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self, gateway_url: str | None = None) -> dict:
        return {
            "transactionId": self.transaction_id,
            "vehicleId": self.vehicle_id,
            "uploadedBy": self.uploaded_by_user_id,
            "documentType": self.document_type,
            "fileName": self.file_name,
            "contentType": self.content_type,
            "size": self.size_bytes,
            "sha256": self.sha256,
            "tags": self.tags or [],
            "simulated": self.simulated,
            "url": f"{gateway_url}/{self.transaction_id}" if gateway_url else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
