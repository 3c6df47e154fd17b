"""
Daily telemetry consolidation.

Each vehicle's readings for one UTC day are split into driving segments (a gap of more
than 30 minutes between readings starts a new segment), hashed into a Merkle tree and
the root is anchored on Solana as a TELEMETRY_BATCH memo. One batch per vehicle per day;
an anchored batch is never rebuilt, a failed one is retried on the next run.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.veridrive.errors import NotFoundError, ValidationError
from app.veridrive.modules.blockchain.service import anchor_telemetry_batch
from app.veridrive.modules.blockchain.solana_client import SolanaError
from app.veridrive.modules.blockchain.wallet import WalletError
from app.veridrive.modules.telemetry.models import Device, TelemetryBatch, VehicleTelemetry
from app.veridrive.modules.vehicles.models import Vehicle
from app.veridrive.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SEGMENT_GAP = timedelta(minutes=30)


@dataclass
class ConsolidationSummary:
    day: date
    processed: int = 0
    anchored: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "processed": self.processed,
            "anchored": self.anchored,
            "failed": self.failed,
            "errors": self.errors,
        }


# --- merkle ------------------------------------------------------------------


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def leaf_hash(leaf: dict[str, Any]) -> str:
    return _sha256(json.dumps(leaf, sort_keys=True, separators=(",", ":")))


def merkle_root(hashes: list[str]) -> str:
    """Pairs are hashed in sorted order; an odd node at any level is paired with itself."""
    if not hashes:
        raise ValueError("Cannot build a Merkle tree without leaves")
    level = list(hashes)
    while len(level) > 1:
        nxt = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            nxt.append(_sha256(min(left, right) + max(left, right)))
        level = nxt
    return level[0]


# --- segments ----------------------------------------------------------------


def _reading_time(rec: VehicleTelemetry) -> datetime:
    return rec.recorded_at or rec.received_at


def build_segments(records: list[VehicleTelemetry]) -> list[dict[str, Any]]:
    """records must be in reading order and carry a mileage."""
    segments: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    last_seen: datetime | None = None
    for rec in records:
        ts = _reading_time(rec)
        if current is None or (last_seen is not None and ts - last_seen > SEGMENT_GAP):
            current = {"startTime": ts, "endTime": ts, "startMileage": rec.mileage, "endMileage": rec.mileage, "readings": 0}
            segments.append(current)
        current["endTime"] = ts
        current["endMileage"] = rec.mileage
        current["readings"] += 1
        last_seen = ts

    out = []
    for index, seg in enumerate(segments):
        out.append(
            {
                "index": index,
                "startTime": seg["startTime"].isoformat(),
                "endTime": seg["endTime"].isoformat(),
                "startMileage": seg["startMileage"],
                "endMileage": seg["endMileage"],
                "distance": max(0, seg["endMileage"] - seg["startMileage"]),
                "readings": seg["readings"],
            }
        )
    return out


# --- batches -----------------------------------------------------------------


def parse_batch_date(raw: Any) -> date | None:
    if raw is None or raw == "":
        return None
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError as e:
        raise ValidationError("date must be YYYY-MM-DD.") from e


def _require_completed_day(day: date) -> None:
    if day >= utcnow().date():
        raise ValidationError("Only completed days can be consolidated.")


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _day_readings(s: "Session", vehicle_id: int, day: date) -> list[VehicleTelemetry]:
    start, end = _day_bounds(day)
    reading_time = func.coalesce(VehicleTelemetry.recorded_at, VehicleTelemetry.received_at)
    return (
        s.query(VehicleTelemetry)
        .filter(
            VehicleTelemetry.vehicle_id == vehicle_id,
            VehicleTelemetry.mileage.isnot(None),
            reading_time >= start,
            reading_time < end,
        )
        .order_by(reading_time.asc(), VehicleTelemetry.id.asc())
        .all()
    )


def vehicles_with_readings(s: "Session", day: date) -> list[int]:
    start, end = _day_bounds(day)
    reading_time = func.coalesce(VehicleTelemetry.recorded_at, VehicleTelemetry.received_at)
    rows = (
        s.query(VehicleTelemetry.vehicle_id)
        .filter(
            VehicleTelemetry.vehicle_id.isnot(None),
            VehicleTelemetry.mileage.isnot(None),
            reading_time >= start,
            reading_time < end,
        )
        .distinct()
        .order_by(VehicleTelemetry.vehicle_id.asc())
        .all()
    )
    return [r[0] for r in rows]


def consolidate_vehicle_day(s: "Session", vehicle_id: int, day: date) -> TelemetryBatch | None:
    """
    Build and anchor the batch for one vehicle and day. Returns None when the vehicle has
    no readings that day. A chain failure leaves the batch in status "error" with last_error set.
    """
    _require_completed_day(day)
    vehicle = s.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFoundError("Vehicle not found")

    batch = (
        s.query(TelemetryBatch)
        .filter(TelemetryBatch.vehicle_id == vehicle_id, TelemetryBatch.batch_date == day)
        .one_or_none()
    )
    if batch is not None and batch.status == "anchored":
        logger.info("Telemetry batch already anchored (vehicle=%s date=%s)", vehicle_id, day)
        return batch

    records = _day_readings(s, vehicle_id, day)
    if not records:
        logger.info("No telemetry to consolidate (vehicle=%s date=%s)", vehicle_id, day)
        return None

    segments = build_segments(records)
    root = merkle_root([leaf_hash(seg) for seg in segments])
    device = s.query(Device).filter(Device.vehicle_id == vehicle_id).first()

    if batch is None:
        batch = TelemetryBatch(vehicle_id=vehicle_id, batch_date=day)
        s.add(batch)
    batch.device_id = device.device_id if device else records[0].device_id
    batch.status = "consolidating"
    batch.record_count = len(records)
    batch.segments = segments
    batch.segments_count = len(segments)
    batch.total_distance = sum(seg["distance"] for seg in segments)
    batch.first_mileage = records[0].mileage
    batch.last_mileage = records[-1].mileage
    batch.merkle_root = root
    batch.last_error = None
    s.flush()

    try:
        tx = anchor_telemetry_batch(s, vehicle, batch)
    except (SolanaError, WalletError) as e:
        batch.status = "error"
        batch.last_error = str(e)[:500]
        logger.error("Telemetry batch anchoring failed (vehicle=%s date=%s): %s", vehicle_id, day, e)
    else:
        batch.status = "anchored"
        batch.solana_tx = tx.signature
        batch.simulated = tx.simulated
        logger.info("Telemetry batch anchored (vehicle=%s date=%s root=%s tx=%s)", vehicle_id, day, root, tx.signature)
    s.flush()
    return batch


def consolidate_day(s: "Session", day: date | None = None) -> ConsolidationSummary:
    """Consolidate every vehicle with readings on day (default: yesterday, UTC)."""
    day = day or (utcnow().date() - timedelta(days=1))
    _require_completed_day(day)
    summary = ConsolidationSummary(day=day)
    vehicle_ids = vehicles_with_readings(s, day)
    logger.info("Consolidating telemetry for %s (%s vehicles)", day, len(vehicle_ids))
    for vehicle_id in vehicle_ids:
        batch = consolidate_vehicle_day(s, vehicle_id, day)
        if batch is None:
            continue
        summary.processed += 1
        if batch.status == "anchored":
            summary.anchored += 1
        else:
            summary.failed += 1
            summary.errors.append(f"Vehicle {vehicle_id}: {batch.last_error}")
    logger.info(
        "Telemetry consolidation finished (date=%s processed=%s anchored=%s failed=%s)",
        day,
        summary.processed,
        summary.anchored,
        summary.failed,
    )
    return summary


def retry_failed_batches(s: "Session", *, limit: int = 50) -> int:
    """Re-run consolidation for batches left in error by earlier runs. Returns how many got anchored."""
    failed = (
        s.query(TelemetryBatch)
        .filter(TelemetryBatch.status == "error")
        .order_by(TelemetryBatch.batch_date.asc(), TelemetryBatch.id.asc())
        .limit(limit)
        .all()
    )
    anchored = 0
    for batch in failed:
        result = consolidate_vehicle_day(s, batch.vehicle_id, batch.batch_date)
        if result is not None and result.status == "anchored":
            anchored += 1
    return anchored


def vehicle_batches(s: "Session", vehicle_id: int, *, limit: int = 30) -> list[TelemetryBatch]:
    return (
        s.query(TelemetryBatch)
        .filter(TelemetryBatch.vehicle_id == vehicle_id)
        .order_by(TelemetryBatch.batch_date.desc())
        .limit(limit)
        .all()
    )
