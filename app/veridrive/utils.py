from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from flask import request

from app.veridrive.errors import ValidationError


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()


def parse_datetime(raw: Any) -> datetime | None:
    """Accepts ISO-8601 strings (with or without Z) and epoch seconds/millis."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, (int, float)):
        ts = float(raw)
        if ts > 1e12:
            ts = ts / 1000.0
        return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {raw}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_float(raw: Any, field: str) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number.")


def parse_int(raw: Any, field: str, *, default: int | None = None, minimum: int | None = None) -> int | None:
    if raw is None or raw == "":
        return default
    try:
        v = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.")
    if minimum is not None and v < minimum:
        raise ValidationError(f"{field} must be >= {minimum}.")
    return v


def json_body() -> dict[str, Any]:
    """Request JSON as a dict; an absent or non-object body is treated as empty."""
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def page_args(default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    page = parse_int(request.args.get("page"), "page", default=1, minimum=1) or 1
    limit = parse_int(request.args.get("limit"), "limit", default=default_limit, minimum=1) or default_limit
    return page, min(limit, max_limit)
