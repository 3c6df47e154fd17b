"""
Vehicle history report: mileage pattern analysis, chain verification, fraud/service/accident
summaries, a rule-based valuation and seller recommendations.

The analysis helpers are pure functions over model rows so they can be exercised without a request.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from app.veridrive.utils import iso, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.veridrive.modules.vehicles.models import (
        AccidentRecord,
        FraudAlert,
        MileageHistory,
        ServiceRecord,
        Vehicle,
    )

REPORT_VERSION = "1.0"
REPORT_VALIDITY = timedelta(days=30)
DAYS_PER_MONTH = 30

BASE_VALUES = {
    "Toyota": 25000,
    "Honda": 24000,
    "Ford": 22000,
    "Chevrolet": 21000,
    "Nissan": 20000,
    "Hyundai": 19000,
    "Kia": 18000,
}
DEFAULT_BASE_VALUE = 20000
MIN_VEHICLE_VALUE = 1000
EXPECTED_MILES_PER_YEAR = 15000
CONDITION_MULTIPLIERS = {"excellent": 1.1, "good": 1.0, "fair": 0.85, "poor": 0.7}


def _months_between(a: datetime, b: datetime) -> float:
    return (a - b).total_seconds() / (60 * 60 * 24 * DAYS_PER_MONTH)


def analyze_mileage_history(records: list["MileageHistory"]) -> dict[str, Any]:
    """records must be newest first."""
    if not records:
        return {
            "totalRecords": 0,
            "verifiedRecords": 0,
            "blockchainRecords": 0,
            "averageMonthlyMileage": 0,
            "mileagePattern": "insufficient_data",
            "records": [],
        }

    newest, oldest = records[0], records[-1]
    months = _months_between(newest.recorded_at, oldest.recorded_at)
    avg_monthly = (newest.mileage - oldest.mileage) / months if months > 0 else 0

    pattern = "consistent"
    increases: list[int] = []
    for i in range(1, len(records)):
        increase = records[i - 1].mileage - records[i].mileage
        if increase < 0:
            pattern = "suspicious"
            break
        increases.append(increase)
    if pattern != "suspicious" and increases:
        mean = sum(increases) / len(increases)
        variance = sum((x - mean) ** 2 for x in increases) / len(increases)
        if variance > mean * 0.5:
            pattern = "irregular"

    return {
        "totalRecords": len(records),
        "verifiedRecords": sum(1 for r in records if r.verified),
        "blockchainRecords": sum(1 for r in records if r.blockchain_hash),
        "firstRecorded": iso(oldest.recorded_at),
        "lastRecorded": iso(newest.recorded_at),
        "averageMonthlyMileage": int(round(avg_monthly)),
        "mileagePattern": pattern,
        "records": [
            {
                "date": iso(r.recorded_at),
                "mileage": r.mileage,
                "source": r.source,
                "verified": r.verified,
                "blockchainHash": r.blockchain_hash,
            }
            for r in records[:50]
        ],
    }


def blockchain_verification(records: list["MileageHistory"]) -> dict[str, Any]:
    """records must be newest first; only hash-bearing rows count."""
    anchored = [r for r in records if r.blockchain_hash]
    total = len(anchored)
    if total > 10:
        integrity = "verified"
    elif total > 0:
        integrity = "partial"
    else:
        integrity = "unverified"
    return {
        "isOnBlockchain": total > 0,
        "totalTransactions": total,
        "firstTransaction": iso(anchored[-1].recorded_at) if anchored else None,
        "lastTransaction": iso(anchored[0].recorded_at) if anchored else None,
        "blockchainIntegrity": integrity,
        "transactions": [
            {"hash": r.blockchain_hash, "date": iso(r.recorded_at), "type": "mileage_update", "mileage": r.mileage, "verified": True}
            for r in anchored[:20]
        ],
    }


def analyze_fraud_alerts(alerts: list["FraudAlert"]) -> dict[str, Any]:
    return {
        "totalAlerts": len(alerts),
        "activeAlerts": sum(1 for a in alerts if a.status == "active"),
        "resolvedAlerts": sum(1 for a in alerts if a.status == "resolved"),
        "criticalAlerts": sum(1 for a in alerts if a.severity == "critical"),
        "alerts": [
            {"type": a.alert_type, "severity": a.severity, "description": a.description, "date": iso(a.reported_at), "status": a.status}
            for a in alerts
        ],
    }


def analyze_service_history(services: list["ServiceRecord"], now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    last = max(services, key=lambda r: r.service_date) if services else None
    score = 50
    if services:
        score += min(len(services) * 5, 30)
        months = _months_between(now, last.service_date)
        if months < 6:
            score += 20
        elif months > 12:
            score -= 20
    score = max(0, min(100, score))
    return {
        "totalServices": len(services),
        "verifiedServices": sum(1 for r in services if r.verified),
        "lastServiceDate": iso(last.service_date) if last else None,
        "maintenanceScore": score,
        "services": [
            {
                "date": iso(r.service_date),
                "type": r.service_type,
                "description": r.description,
                "mileage": r.mileage_at_service,
                "cost": r.cost,
                "verified": r.verified,
            }
            for r in services[:20]
        ],
    }


def analyze_accident_history(accidents: list["AccidentRecord"]) -> dict[str, Any]:
    last = max(accidents, key=lambda a: a.accident_date) if accidents else None
    return {
        "totalAccidents": len(accidents),
        "majorAccidents": sum(1 for a in accidents if a.severity in ("major", "total_loss")),
        "lastAccidentDate": iso(last.accident_date) if last else None,
        "accidents": [
            {"date": iso(a.accident_date), "severity": a.severity, "description": a.description, "repairCost": a.repair_cost, "verified": a.verified}
            for a in accidents
        ],
    }


def base_vehicle_value(make: str, year: int, current_year: int) -> float:
    value = float(BASE_VALUES.get(make, DEFAULT_BASE_VALUE))
    for i in range(max(0, current_year - year)):
        value *= 1 - (0.10 if i < 5 else 0.05)
    return max(value, MIN_VEHICLE_VALUE)


def estimate_value(vehicle: "Vehicle", current_year: int) -> float:
    value = base_vehicle_value(vehicle.make, vehicle.year, current_year)
    expected = (current_year - vehicle.year) * EXPECTED_MILES_PER_YEAR
    value += (expected - vehicle.current_mileage) * 0.1
    value *= CONDITION_MULTIPLIERS.get(vehicle.condition, 1.0)
    value *= 1 + (vehicle.trust_score - 50) * 0.002
    return value


def market_analysis(s: "Session", vehicle: "Vehicle", now: datetime | None = None) -> dict[str, Any]:
    from app.veridrive.modules.marketplace.models import Listing
    from app.veridrive.modules.vehicles.models import Vehicle

    now = now or utcnow()
    value = estimate_value(vehicle, now.year)
    similar = (
        s.query(Listing)
        .join(Vehicle, Listing.vehicle_id == Vehicle.id)
        .filter(
            Listing.status == "active",
            Vehicle.make == vehicle.make,
            Vehicle.model == vehicle.model,
            Vehicle.year.between(vehicle.year - 2, vehicle.year + 2),
            Vehicle.id != vehicle.id,
        )
        .all()
    )
    avg_price = sum(l.price or value for l in similar) / len(similar) if similar else value

    comparison = "at_market"
    if value > avg_price * 1.1:
        comparison = "above_market"
    elif value < avg_price * 0.9:
        comparison = "below_market"

    demand = "medium"
    if len(similar) > 10:
        demand = "low"
    elif len(similar) < 3:
        demand = "high"

    return {
        "estimatedValue": int(round(value)),
        "marketComparison": comparison,
        "demandLevel": demand,
        "similarVehicles": len(similar),
        "averageMarketPrice": int(round(avg_price)),
        "priceRange": {"min": int(round(value * 0.85)), "max": int(round(value * 1.15))},
    }


def recommendations(
    vehicle: "Vehicle",
    mileage: dict[str, Any],
    fraud: dict[str, Any],
    service: dict[str, Any],
    market: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, list[str]]:
    now = now or utcnow()
    listing, price, maintenance, trust = [], [], [], []

    if mileage["blockchainRecords"] > 0:
        listing.append("Highlight blockchain-verified mileage history as a key selling point")
    if vehicle.trust_score > 80:
        listing.append("Emphasize high trust score in listing description")
    if fraud["activeAlerts"] == 0:
        listing.append("Mention clean fraud history with no active alerts")

    if market["marketComparison"] == "above_market":
        price.append("Consider reducing price to be more competitive with market")
    elif market["marketComparison"] == "below_market":
        price.append("You may be able to increase asking price based on market analysis")
    if market["demandLevel"] == "high":
        price.append("High demand detected - consider pricing at upper end of range")

    if service["maintenanceScore"] < 60:
        maintenance.append("Consider recent service to improve maintenance score")
    last_service = vehicle.service_records and max(r.service_date for r in vehicle.service_records)
    if last_service and now - last_service > timedelta(days=365):
        maintenance.append("Vehicle is overdue for service - consider maintenance before listing")

    if vehicle.trust_score < 70:
        trust.append("Add more verified service records to improve trust score")
    if mileage["verifiedRecords"] < mileage["totalRecords"] * 0.5:
        trust.append("Get more mileage records verified by certified service providers")
    if fraud["activeAlerts"] > 0:
        trust.append("Resolve active fraud alerts to improve trust score")

    return {
        "listingRecommendations": listing,
        "priceRecommendations": price,
        "maintenanceRecommendations": maintenance,
        "trustImprovements": trust,
    }


def confidence_level(vehicle: "Vehicle", mileage_record_count: int) -> int:
    confidence = 50
    if mileage_record_count > 10:
        confidence += 20
    if len(vehicle.service_records) > 5:
        confidence += 15
    if vehicle.trust_score > 80:
        confidence += 10
    if vehicle.verification_status == "verified":
        confidence += 5
    if vehicle.active_fraud_alerts:
        confidence -= 20
    if vehicle.trust_score < 50:
        confidence -= 15
    return max(0, min(100, confidence))


def data_sources_count(vehicle: "Vehicle", mileage_record_count: int) -> int:
    return sum(
        (
            mileage_record_count > 0,
            bool(vehicle.service_records),
            bool(vehicle.accidents),
            bool(vehicle.fraud_alerts),
            bool(vehicle.blockchain_hash),
        )
    )


def generate_vehicle_history_report(s: "Session", vehicle: "Vehicle", now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    records = sorted(vehicle.mileage_history, key=lambda r: (r.recorded_at, r.id or 0), reverse=True)
    mileage = analyze_mileage_history(records)
    fraud = analyze_fraud_alerts(list(vehicle.fraud_alerts))
    service = analyze_service_history(list(vehicle.service_records), now)
    market = market_analysis(s, vehicle, now)
    return {
        "vehicleInfo": {
            "vehicleId": vehicle.id,
            "vin": vehicle.vin,
            "make": vehicle.make,
            "model": vehicle.model,
            "year": vehicle.year,
            "currentMileage": vehicle.current_mileage,
            "trustScore": vehicle.trust_score,
            "verificationStatus": vehicle.verification_status,
        },
        "mileageHistory": mileage,
        "fraudAlerts": fraud,
        "serviceHistory": service,
        "accidentHistory": analyze_accident_history(list(vehicle.accidents)),
        "blockchainVerification": blockchain_verification(records),
        "marketAnalysis": market,
        "recommendations": recommendations(vehicle, mileage, fraud, service, market, now),
        "reportMetadata": {
            "generatedAt": iso(now),
            "reportVersion": REPORT_VERSION,
            "dataSourcesCount": data_sources_count(vehicle, len(records)),
            "confidenceLevel": confidence_level(vehicle, len(records)),
            "validUntil": iso(now + REPORT_VALIDITY),
        },
    }
