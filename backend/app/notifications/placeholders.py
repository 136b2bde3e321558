"""
placeholders.py — Webhook payload → template placeholders / plain text.

Field extraction precedence (first non-null wins):

    alert type   alert_type → type → "Unknown"
    message      message → description → ""
    vehicle id   vehicle_id → body.vehicle.id → "NA"
    customer id  customer_id → body.customer.id → None
    occurred at  occurred_at → timestamp → now (UTC, ISO-8601)
    phone        phone_number → body.user.phone_number → phone
                 → body.customer.phone → user.phone_number → None

Template placeholders are always eight strings, in this order:

    {{1}} vehicle id   {{2}} alert type   {{3}} message   {{4}} occurred at
    {{5}} latitude     {{6}} longitude    {{7}} speed     {{8}} address

Missing values are sent as "" because the provider rejects nulls and
positional templates break if the list is shorter.

Plain-text fallback:

    "Vehicle V1 triggered overspeed at 2:25 PM, speed 125km/h (limit 100) at King Fahd Road."
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from backend.app.notifications.models import AlertFields

_MISSING = object()

PHONE_PATHS = (
    "phone_number",
    "body.user.phone_number",
    "phone",
    "body.customer.phone",
    "user.phone_number",
)

_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})[.,]\d+")


def _dig(payload: Mapping[str, Any], path: str) -> Any:
    """Dotted-path lookup; returns _MISSING on any absent segment."""
    current: Any = payload
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _first(payload: Mapping[str, Any], *paths: str, default: Any = None) -> Any:
    for path in paths:
        value = _dig(payload, path)
        if value is not _MISSING and value is not None:
            return value
    return default


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _optional_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def extract_fields(payload: Mapping[str, Any]) -> AlertFields:
    """Pull the known fields out of a webhook body."""
    phone = _first(payload, *PHONE_PATHS)
    phone = str(phone).strip() if phone is not None else ""

    occurred_at = _first(payload, "occurred_at", "timestamp")
    if occurred_at is None:
        occurred_at = datetime.now(timezone.utc).isoformat()

    return AlertFields(
        alert_type=_as_text(_first(payload, "alert_type", "type", default="Unknown")),
        vehicle_id=_as_text(_first(payload, "vehicle_id", "body.vehicle.id", default="NA")),
        occurred_at=_as_text(occurred_at),
        message=_as_text(_first(payload, "message", "description", default="")),
        customer_id=_optional_text(_first(payload, "customer_id", "body.customer.id")),
        event_id=_optional_text(_first(payload, "event_id")),
        phone=phone or None,
        speed=_as_text(_first(payload, "speed", default="")),
        address=_as_text(_first(payload, "address", default="")),
        latitude=_as_text(_first(payload, "location.lat", default="")),
        longitude=_as_text(_first(payload, "location.lng", default="")),
    )


def build_placeholders(fields: AlertFields) -> List[str]:
    """Ordered template placeholders; length is always 8."""
    return [
        fields.vehicle_id or "",
        fields.alert_type or "",
        fields.message or "",
        fields.occurred_at or "",
        fields.latitude or "",
        fields.longitude or "",
        fields.speed or "",
        fields.address or "",
    ]


# ---------------------------------------------------------------------------
# Time handling
# ---------------------------------------------------------------------------

def parse_occurred_at(value: str) -> Optional[datetime]:
    """
    Parse an ISO-ish timestamp, dropping sub-second precision.

    Accepts "2025-01-01T00:00:00Z", "2025-08-17 14:25:00",
    "2025-08-17T14:25:00.000+03:00". Returns None when unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(r"\1", text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def format_clock(moment: datetime) -> str:
    """12-hour clock without a leading zero: 2:05 PM."""
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


_NUMERIC = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")


def _is_numeric(value: str) -> bool:
    """Plain decimal or exponent notation; no underscores, inf or nan."""
    return bool(value) and _NUMERIC.match(value) is not None


def render_plain_text(fields: AlertFields, speed_limit_kmh: int = 100) -> str:
    """Free-text sentence used when no template is mapped for the type."""
    moment = parse_occurred_at(fields.occurred_at)
    when = format_clock(moment) if moment is not None else "Unknown time"

    text = f"Vehicle {fields.vehicle_id} triggered {fields.alert_type} at {when}"

    if _is_numeric(fields.speed) and "speed" in fields.alert_type.lower():
        text += f", speed {fields.speed.strip()}km/h (limit {speed_limit_kmh})"

    if fields.address:
        text += f" at {fields.address}"

    return text + "."
