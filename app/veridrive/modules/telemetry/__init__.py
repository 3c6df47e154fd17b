"""
Telemetry module.

Scope:
- Device ingestion endpoint (unauthenticated, keyed by device id)
- Mileage history classification and odometer rollback detection
- OBD health checks and read-side telemetry/fraud-alert views
"""
