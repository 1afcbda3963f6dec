import math
from datetime import date, datetime, timezone
from typing import Optional


def utc_today() -> date:
    """Return today's calendar date in UTC."""
    return datetime.now(timezone.utc).date()


def workflow_id_for(delivery_id: str, on_date: Optional[date] = None) -> str:
    """Return the instance key for a delivery. E.g. 'delivery-d42-2030-06-15'."""
    on_date = on_date or utc_today()
    return f"delivery-{delivery_id}-{on_date.isoformat()}"


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up. E.g. 2.5 -> 3, -2.5 -> -2."""
    return int(math.floor(value + 0.5))


def delay_minutes_from_seconds(planned_seconds: float, in_traffic_seconds: float) -> int:
    """Whole minutes of traffic delay, never negative. E.g. (3600, 5400) -> 30."""
    return max(0, round_half_up((in_traffic_seconds - planned_seconds) / 60))


def minutes_to_ms(minutes: float) -> int:
    """Convert whole minutes (fraction dropped) to milliseconds, clamped at 0. E.g. 5.9 -> 300000."""
    return max(0, math.floor(minutes) * 60_000)
