"""Initial VeriDrive schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-14
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ---------- Identity ----------
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("account_status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("primary_role", sa.String(32), nullable=False, server_default="owner"),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("password_changed_at", sa.DateTime(), nullable=True),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )

    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "role_id"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )
    op.create_index("idx_audit_entity", "audit_events", ["entity_type", "entity_id"])

    # ---------- Vehicles ----------
    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vin", sa.String(17), nullable=False),
        sa.Column("vehicle_number", sa.String(20), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("make", sa.String(50), nullable=False),
        sa.Column("model", sa.String(50), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(30), nullable=True),
        sa.Column("body_type", sa.String(32), nullable=True),
        sa.Column("fuel_type", sa.String(32), nullable=True),
        sa.Column("transmission", sa.String(32), nullable=True),
        sa.Column("condition", sa.String(32), nullable=False, server_default="good"),
        sa.Column("current_mileage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_verified_mileage", sa.Integer(), nullable=True),
        sa.Column("last_mileage_update", sa.DateTime(), nullable=False),
        sa.Column("verification_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("trust_score", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("last_trust_score_update", sa.DateTime(), nullable=True),
        sa.Column("trust_history_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_for_sale", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("listing_status", sa.String(32), nullable=False, server_default="not_listed"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("blockchain_hash", sa.String(128), nullable=True),
        sa.Column("blockchain_address", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("vin"),
    )
    op.create_index("idx_vehicles_owner", "vehicles", ["owner_id"])
    op.create_index("idx_vehicles_trust_score", "vehicles", ["trust_score"])
    op.create_index("idx_vehicles_for_sale", "vehicles", ["is_for_sale", "listing_status"])
    op.create_index("idx_vehicles_make_model", "vehicles", ["make", "model"])

    op.create_table(
        "mileage_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("mileage", sa.Integer(), nullable=False),
        sa.Column("recorded_by_user_id", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False, server_default="owner"),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("blockchain_hash", sa.String(128), nullable=True),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recorded_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_mileage_history_vehicle", "mileage_history", ["vehicle_id", "recorded_at"])

    op.create_table(
        "fraud_alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("alert_type", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("description", sa.String(1000), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("reported_by_user_id", sa.Integer(), nullable=True),
        sa.Column("reported_at", sa.DateTime(), nullable=False),
        sa.Column("investigation_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reported_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["resolved_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_fraud_alerts_vehicle_status", "fraud_alerts", ["vehicle_id", "status"])

    op.create_table(
        "service_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("service_provider_id", sa.Integer(), nullable=True),
        sa.Column("service_type", sa.String(32), nullable=False),
        sa.Column("description", sa.String(1000), nullable=True),
        sa.Column("cost", sa.Float(), nullable=True),
        sa.Column("mileage_at_service", sa.Integer(), nullable=True),
        sa.Column("service_date", sa.DateTime(), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["service_provider_id"], ["users.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "accident_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("accident_date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.String(1000), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("repair_cost", sa.Float(), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "ownership_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("from_owner_id", sa.Integer(), nullable=True),
        sa.Column("to_owner_id", sa.Integer(), nullable=False),
        sa.Column("transfer_date", sa.DateTime(), nullable=False),
        sa.Column("sale_price", sa.Float(), nullable=True),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["from_owner_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["to_owner_id"], ["users.id"], ondelete="RESTRICT"),
    )

    # ---------- Telemetry / trust ----------
    op.create_table(
        "devices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("device_id", sa.String(64), nullable=False),
        sa.Column("device_type", sa.String(64), nullable=False, server_default="ESP32_Telematics"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("vehicle_id", sa.Integer(), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=True),
        sa.Column("firmware_version", sa.String(32), nullable=True),
        sa.Column("battery_voltage", sa.Float(), nullable=True),
        sa.Column("boot_count", sa.Integer(), nullable=True),
        sa.Column("last_seen", sa.DateTime(), nullable=True),
        sa.Column("installed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("device_id"),
    )
    op.create_index("idx_devices_vehicle", "devices", ["vehicle_id"])

    op.create_table(
        "vehicle_telemetry",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("device_id", sa.String(64), nullable=False),
        sa.Column("vehicle_id", sa.Integer(), nullable=True),
        sa.Column("vin", sa.String(17), nullable=True),
        sa.Column("device_status", sa.String(32), nullable=False),
        sa.Column("mileage", sa.Integer(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column("rpm", sa.Float(), nullable=True),
        sa.Column("engine_temp", sa.Float(), nullable=True),
        sa.Column("fuel_level", sa.Float(), nullable=True),
        sa.Column("battery_voltage", sa.Float(), nullable=True),
        sa.Column("data_quality", sa.Float(), nullable=True),
        sa.Column("validation_status", sa.String(32), nullable=False, server_default="RECEIVED"),
        sa.Column("tampering_detected", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("validation_errors", sa.JSON(), nullable=True),
        sa.Column("previous_mileage", sa.Integer(), nullable=True),
        sa.Column("new_mileage", sa.Integer(), nullable=True),
        sa.Column("delta", sa.Integer(), nullable=True),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("flag_reason", sa.String(500), nullable=True),
        sa.Column("data_source", sa.String(32), nullable=True),
        sa.Column("blockchain_hash", sa.String(128), nullable=True),
        sa.Column("recorded_at", sa.DateTime(), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_telemetry_vehicle_received", "vehicle_telemetry", ["vehicle_id", "received_at"])
    op.create_index("idx_telemetry_device", "vehicle_telemetry", ["device_id"])

    op.create_table(
        "trust_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("change", sa.Integer(), nullable=False),
        sa.Column("previous_score", sa.Integer(), nullable=False),
        sa.Column("new_score", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(500), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("event_timestamp", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_trust_events_vehicle_ts", "trust_events", ["vehicle_id", "event_timestamp"])

    # ---------- Marketplace / installs / purchase ----------
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("negotiable", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("condition", sa.String(32), nullable=False, server_default="good"),
        sa.Column("contact_preference", sa.String(32), nullable=False, server_default="platform"),
        sa.Column("available_for_inspection", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("inspection_location", sa.String(255), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("removal_reason", sa.String(500), nullable=True),
        sa.Column("history_report", sa.JSON(), nullable=True),
        sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("removed_at", sa.DateTime(), nullable=True),
        sa.Column("sold_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["seller_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_listings_vehicle_status", "listings", ["vehicle_id", "status"])
    op.create_index("idx_listings_status_created", "listings", ["status", "created_at"])

    op.create_table(
        "installation_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("service_provider_id", sa.Integer(), nullable=True),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="requested"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("preferred_date", sa.DateTime(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("installed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        sa.Column("history", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["service_provider_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_install_requests_vehicle_status", "installation_requests", ["vehicle_id", "status"])
    op.create_index("idx_install_requests_owner", "installation_requests", ["owner_id"])
    op.create_index("idx_install_requests_provider", "installation_requests", ["service_provider_id"])
    op.create_index("idx_install_requests_device", "installation_requests", ["device_id"])

    op.create_table(
        "purchase_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.Integer(), nullable=False),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("counter_price", sa.Float(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("seller_message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending_seller"),
        sa.Column("verification_results", sa.JSON(), nullable=True),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["listing_id"], ["listings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["buyer_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["seller_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_purchase_requests_buyer", "purchase_requests", ["buyer_id", "status"])
    op.create_index("idx_purchase_requests_seller", "purchase_requests", ["seller_id", "status"])
    op.create_index("idx_purchase_requests_vehicle", "purchase_requests", ["vehicle_id"])

    op.create_table(
        "escrows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("purchase_request_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("funded_at", sa.DateTime(), nullable=True),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["purchase_request_id"], ["purchase_requests.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("idempotency_key"),
    )

    op.create_table(
        "sale_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("purchase_request_id", sa.Integer(), nullable=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=True),
        sa.Column("buyer_id", sa.Integer(), nullable=True),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.Column("sold_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["purchase_request_id"], ["purchase_requests.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["seller_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["buyer_id"], ["users.id"], ondelete="SET NULL"),
    )

    # ---------- Chain ----------
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("public_key", sa.String(64), nullable=False),
        sa.Column("encrypted_secret_key", sa.Text(), nullable=False),
        sa.Column("network", sa.String(32), nullable=False, server_default="devnet"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id"),
        sa.UniqueConstraint("public_key"),
    )

    op.create_table(
        "blockchain_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("signature", sa.String(128), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=True),
        sa.Column("tx_type", sa.String(32), nullable=False),
        sa.Column("memo", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="confirmed"),
        sa.Column("network", sa.String(32), nullable=False, server_default="devnet"),
        sa.Column("simulated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("signature"),
    )
    op.create_index("idx_chain_tx_vehicle", "blockchain_transactions", ["vehicle_id", "created_at"])
    op.create_index("idx_chain_tx_user", "blockchain_transactions", ["user_id", "created_at"])

    op.create_table(
        "arweave_documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.String(64), nullable=False),
        sa.Column("vehicle_id", sa.Integer(), nullable=True),
        sa.Column("uploaded_by_user_id", sa.Integer(), nullable=True),
        sa.Column("document_type", sa.String(64), nullable=False, server_default="other"),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(128), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("storage_key", sa.String(512), nullable=True),
        sa.Column("simulated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["uploaded_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index("idx_arweave_docs_vehicle", "arweave_documents", ["vehicle_id"])

    # ---------- Notifications ----------
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("notification_type", sa.String(32), nullable=False, server_default="info"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_notifications_user_read", "notifications", ["user_id", "is_read"])


def downgrade() -> None:
    for table in (
        "notifications",
        "arweave_documents",
        "blockchain_transactions",
        "wallets",
        "sale_records",
        "escrows",
        "purchase_requests",
        "installation_requests",
        "listings",
        "trust_events",
        "vehicle_telemetry",
        "devices",
        "ownership_history",
        "accident_records",
        "service_records",
        "fraud_alerts",
        "mileage_history",
        "vehicles",
        "audit_events",
        "user_roles",
        "roles",
        "users",
    ):
        op.drop_table(table)
