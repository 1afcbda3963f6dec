"""delivery_monitor/integrations/traffic.py — Planned vs in-traffic travel time.

fetch_traffic_conditions() is the traffic collaborator of the monitor loop.
Provider selection (settings.TRAFFIC_PROVIDER):

  google_routes  (default) — Routes API v2 computeRoutes, TRAFFIC_AWARE.
  google_legacy            — Distance Matrix API via the googlemaps client.

Mock mode (USE_MOCK_TRAFFIC=true, or no GOOGLE_MAPS_API_KEY) returns a fixed
60 → 90 minute trip so the rest of the pipeline can run offline.

Every provider failure is retried TRAFFIC_MAX_ATTEMPTS times with a linear
backoff and then raised as TrafficProviderError, which the loop treats as a
transient, cycle-abandoning failure.
"""
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import googlemaps
import requests
from googlemaps import exceptions as gmaps_exceptions

from delivery_monitor.config import settings
from delivery_monitor.errors import TrafficProviderError
from delivery_monitor.models.schemas import TrafficConditions
from delivery_monitor.utils.time_utils import delay_minutes_from_seconds

logger = logging.getLogger(__name__)

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
_ROUTES_FIELD_MASK = "routes.duration,routes.staticDuration"
_DURATION_RE = re.compile(r"^(\d+)s$")

# Mock trip: 60 min planned, 90 min in traffic
_MOCK_PLANNED_SECONDS = 3600
_MOCK_IN_TRAFFIC_SECONDS = 5400

# Element statuses treated as "no route available" rather than an error.
# Reported as zero delay, which is indistinguishable from free-flowing traffic.
_NO_ROUTE_STATUSES = {"ZERO_RESULTS", "NOT_FOUND"}

_RETRYABLE = (
    requests.RequestException,
    gmaps_exceptions.ApiError,
    gmaps_exceptions.TransportError,
    gmaps_exceptions.Timeout,
    TrafficProviderError,
    KeyError,
    ValueError,
)


def _conditions(planned_seconds: int, in_traffic_seconds: int) -> TrafficConditions:
    return TrafficConditions(
        planned_seconds=planned_seconds,
        in_traffic_seconds=in_traffic_seconds,
        delay_minutes=delay_minutes_from_seconds(planned_seconds, in_traffic_seconds),
    )


def _parse_duration(value: Optional[str]) -> Optional[int]:
    """Parse a Routes API duration such as '1234s' into seconds."""
    if not value:
        return None
    match = _DURATION_RE.match(value)
    return int(match.group(1)) if match else None


def _with_retries(call: Callable[[], TrafficConditions], provider: str) -> TrafficConditions:
    """Run *call* up to TRAFFIC_MAX_ATTEMPTS times, sleeping attempt * 0.5 s between tries."""
    attempts = max(1, settings.TRAFFIC_MAX_ATTEMPTS)
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return call()
        except _RETRYABLE as exc:
            last_error = exc
            logger.warning(
                "Traffic %s attempt %d/%d failed: %s", provider, attempt, attempts, exc
            )
            if attempt < attempts:
                time.sleep(attempt * 0.5)

    logger.error("Traffic %s failed after %d attempts: %s", provider, attempts, last_error)
    raise TrafficProviderError(f"{provider} failed: {last_error}") from last_error


def _fetch_routes(origin: str, destination: str) -> TrafficConditions:
    """Call the Routes API once and convert the first route to TrafficConditions."""
    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": settings.GOOGLE_MAPS_API_KEY,
        "X-Goog-FieldMask": _ROUTES_FIELD_MASK,
    }
    # Routes requires departureTime to be in the future when given
    departure = datetime.now(timezone.utc) + timedelta(minutes=2)
    body = {
        "origin": {"address": origin},
        "destination": {"address": destination},
        "travelMode": "DRIVE",
        "routingPreference": "TRAFFIC_AWARE",
        "departureTime": departure.isoformat().replace("+00:00", "Z"),
    }

    res = requests.post(
        ROUTES_URL, headers=headers, json=body, timeout=settings.HTTP_TIMEOUT_SECONDS
    )
    if not res.ok:
        logger.error("Routes HTTP %d body=%s", res.status_code, res.text)
        raise TrafficProviderError(f"Routes HTTP {res.status_code}")

    routes = res.json().get("routes") or []
    if not routes:
        raise TrafficProviderError("Routes: missing routes[0]")

    in_traffic = _parse_duration(routes[0].get("duration"))
    planned = _parse_duration(routes[0].get("staticDuration")) or in_traffic
    if in_traffic is None or planned is None:
        raise TrafficProviderError("Routes: invalid duration fields")

    return _conditions(planned, in_traffic)


def _fetch_distance_matrix(origin: str, destination: str) -> TrafficConditions:
    """Call the legacy Distance Matrix API once for a single origin/destination pair."""
    client = googlemaps.Client(
        key=settings.GOOGLE_MAPS_API_KEY,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        retry_timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    response = client.distance_matrix(
        origins=[origin],
        destinations=[destination],
        mode="driving",
        departure_time="now",
        traffic_model="best_guess",
        units="metric",
    )

    rows = response.get("rows") or []
    elements = rows[0].get("elements") if rows else None
    if not elements:
        raise TrafficProviderError("DistanceMatrix: missing rows/elements")
    element = elements[0]

    status = element.get("status")
    if status != "OK":
        if status in _NO_ROUTE_STATUSES:
            logger.warning("element.status=%s; treating as no route → delay 0m", status)
            return _conditions(0, 0)
        raise TrafficProviderError(f"Element status {status}")

    planned = element["duration"]["value"]
    in_traffic = element.get("duration_in_traffic", element["duration"])["value"]

    return _conditions(int(planned), int(in_traffic))


def fetch_traffic_conditions(origin: str, destination: str) -> TrafficConditions:
    """Return planned vs in-traffic durations and the derived delay for a trip.

    Args:
        origin:       Free-text origin address.
        destination:  Free-text destination address.

    Returns:
        TrafficConditions with delay_minutes = max(0, round((in_traffic - planned) / 60)).

    Raises:
        TrafficProviderError: the provider kept failing after all retries.
    """
    if settings.USE_MOCK_TRAFFIC or not settings.GOOGLE_MAPS_API_KEY:
        result = _conditions(_MOCK_PLANNED_SECONDS, _MOCK_IN_TRAFFIC_SECONDS)
        logger.info("Traffic (mock): %s → %s delay=%dm", origin, destination, result.delay_minutes)
        return result

    provider = settings.TRAFFIC_PROVIDER.lower()
    if provider == "google_routes":
        result = _with_retries(lambda: _fetch_routes(origin, destination), "routes")
    else:
        result = _with_retries(
            lambda: _fetch_distance_matrix(origin, destination), "distance_matrix"
        )

    logger.info(
        "Traffic: %s → %s planned=%dm in_traffic=%dm delay=%dm",
        origin,
        destination,
        round(result.planned_seconds / 60),
        round(result.in_traffic_seconds / 60),
        result.delay_minutes,
    )
    return result
