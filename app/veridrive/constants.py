"""
Central constants for the VeriDrive application.
"""
from __future__ import annotations

# Role keys; role strings are the only authorization dimension.
ROLES = ("admin", "owner", "buyer", "service", "insurance", "government")
SELF_REGISTER_ROLES = frozenset({"owner", "buyer", "service", "insurance", "government"})

ACCOUNT_STATUSES = frozenset({"active", "suspended", "inactive"})

# Telemetry validation statuses
STATUS_VALID = "VALID"
STATUS_RECEIVED = "RECEIVED"
STATUS_PENDING = "PENDING"
STATUS_INVALID = "INVALID"
STATUS_SUSPICIOUS = "SUSPICIOUS"
STATUS_ROLLBACK = "ROLLBACK_DETECTED"
STATUS_CONNECTION_ERROR = "CONNECTION_ERROR"
FRAUD_STATUSES = frozenset({STATUS_ROLLBACK, "IMPOSSIBLE_DISTANCE", "SUDDEN_JUMP"})

# Readings jumping more than this between two reports are flagged as suspicious.
SUSPICIOUS_DELTA = 1000

ROLLBACK_TRUST_PENALTY = -30

# Health thresholds on raw OBD readings
MAX_ENGINE_TEMP = 100
MIN_BATTERY_VOLTAGE = 12.0
MAX_RPM = 4000
MIN_FUEL_LEVEL = 10

TRUST_SOURCES = frozenset({"telemetry", "admin", "manual", "fraudEngine", "anchor"})
TRUST_MIN = 0
TRUST_MAX = 100
TRUST_DEFAULT = 100

MILEAGE_SOURCES = frozenset({"owner", "service", "inspection", "government", "automated"})
VERIFICATION_STATUSES = frozenset({"pending", "verified", "flagged", "rejected", "expired"})
LISTING_STATUSES = frozenset({"active", "sold", "pending", "inactive", "draft", "expired", "not_listed"})
VEHICLE_CONDITIONS = ("excellent", "good", "fair", "poor")

FRAUD_ALERT_TYPES = frozenset(
    {"odometer_rollback", "title_washing", "duplicate_vin", "stolen_vehicle", "flood_damage", "other"}
)
FRAUD_ALERT_STATUSES = frozenset({"active", "investigating", "resolved", "false_positive"})

APP_NAME = "VERIDRIVE"
APP_VERSION = "1.0.0"
