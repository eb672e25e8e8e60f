"""
Transit commute time per listing via the Google Routes API.

Each listing gets one computeRoutes call (TRANSIT, single route) to a
fixed destination, departing at the next weekday 08:00 JST. Successful
results are cached until the cache is flushed; failures are cached as
zero-valued placeholders that expire after PLACEHOLDER_TTL so the batch
does not hammer the API for listings it cannot route.
"""

import logging
import re
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from ap_trace import get_trace
from config import DEFAULT_COMMUTE_DESTINATION
from errors import EnrichmentUnavailable
from listing_types import CommuteInfo, utc_now_iso
from models import Store

logger = logging.getLogger(__name__)

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
FIELD_MASK = "routes.duration,routes.legs.steps.transitDetails"

JST = timezone(timedelta(hours=9))
DEPARTURE_HOUR = 8
RATE_LIMIT_DELAY = 0.2  # seconds between Routes calls within a batch
PLACEHOLDER_TTL = timedelta(hours=6)

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


@dataclass
class CommuteInput:
    id: int
    latitude: float
    longitude: float


def next_weekday_morning(now: Optional[datetime] = None) -> datetime:
    """Next weekday 08:00 JST, strictly after ``now``.

    Starts from tomorrow; Saturday and Sunday roll forward to Monday.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(JST)
    departure = (now + timedelta(days=1)).replace(
        hour=DEPARTURE_HOUR, minute=0, second=0, microsecond=0
    )
    if departure.weekday() == 5:  # Saturday
        departure += timedelta(days=2)
    elif departure.weekday() == 6:  # Sunday
        departure += timedelta(days=1)
    if departure <= now:
        departure += timedelta(days=7)
    return departure


def parse_duration_minutes(duration: str) -> int:
    """Parse a Routes duration such as "1920s" into minutes, rounded half up."""
    match = _DURATION_RE.match(duration or "")
    if not match:
        raise EnrichmentUnavailable(f"Unrecognised route duration: {duration!r}")
    seconds = float(match.group(1))
    return int(seconds / 60 + 0.5)


def count_transfers(route: Dict[str, Any]) -> int:
    """Transit steps in the first leg minus one, never negative."""
    legs = route.get("legs") or []
    if not legs:
        return 0
    steps = legs[0].get("steps") or []
    transit_steps = sum(1 for step in steps if step.get("transitDetails"))
    return max(0, transit_steps - 1)


class RoutesClient:
    """Client for the Google Routes computeRoutes endpoint"""

    DEFAULT_TIMEOUT = 20

    def __init__(
        self,
        api_key: Optional[str],
        destination: Tuple[float, float] = DEFAULT_COMMUTE_DESTINATION,
        timeout: Optional[int] = None,
    ):
        self.api_key = api_key
        self.destination = destination
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.session = requests.Session()
        self.session.trust_env = False

    def request_body(self, lat: float, lng: float, departure: datetime) -> Dict[str, Any]:
        dest_lat, dest_lng = self.destination
        return {
            "origin": {"location": {"latLng": {"latitude": lat, "longitude": lng}}},
            "destination": {
                "location": {"latLng": {"latitude": dest_lat, "longitude": dest_lng}}
            },
            "travelMode": "TRANSIT",
            "computeAlternativeRoutes": False,
            "departureTime": departure.astimezone(timezone.utc).isoformat().replace(
                "+00:00", "Z"
            ),
        }

    def compute_route(self, lat: float, lng: float, departure: datetime) -> Dict[str, Any]:
        """Return the first route. Raises EnrichmentUnavailable."""
        if not self.api_key:
            raise EnrichmentUnavailable("GOOGLE_MAPS_API_KEY is not configured")

        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": FIELD_MASK,
        }
        t0 = time.time()
        try:
            response = self.session.post(
                ROUTES_URL,
                json=self.request_body(lat, lng, departure),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EnrichmentUnavailable(f"Routes API request failed: {e}") from e
        elapsed_ms = int((time.time() - t0) * 1000)

        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_routes",
                endpoint="computeRoutes",
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
            )

        if not response.ok:
            raise EnrichmentUnavailable(
                f"Routes API error: {response.status_code} {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError:
            raise EnrichmentUnavailable("Routes API returned non-JSON response")

        routes = data.get("routes") if isinstance(data, dict) else None
        if not routes:
            raise EnrichmentUnavailable("No route found")
        return routes[0]


class CommuteEngine:
    def __init__(self, store: Store, client: RoutesClient, delay: float = RATE_LIMIT_DELAY):
        self.store = store
        self.client = client
        self.delay = delay

    def compute_commute(
        self, item: CommuteInput, departure: Optional[datetime] = None
    ) -> CommuteInfo:
        """Route one listing and cache the result. Raises EnrichmentUnavailable."""
        departure = departure or next_weekday_morning()
        route = self.client.compute_route(item.latitude, item.longitude, departure)
        minutes = parse_duration_minutes(route.get("duration", ""))
        commute = CommuteInfo(
            property_id=item.id,
            duration_minutes=minutes,
            duration_text=f"{minutes} min",
            transfer_count=count_transfers(route),
            computed_at=utc_now_iso(),
        )
        self.store.set_cached_commute(commute)
        return commute

    def compute_commutes(self, items: List[CommuteInput]) -> List[CommuteInfo]:
        """One result per input, in order.

        Cached entries are returned as-is. A failure caches and returns a
        placeholder that expires after PLACEHOLDER_TTL.
        """
        departure = next_weekday_morning()
        results = []
        called = False
        for item in items:
            cached = self.store.get_cached_commute(item.id)
            if cached:
                results.append(cached)
                continue
            if called and self.delay:
                time.sleep(self.delay)
            called = True
            try:
                results.append(self.compute_commute(item, departure))
            except Exception as e:
                logger.error("[commute] Failed to compute commute for %s: %s", item.id, e)
                placeholder = CommuteInfo.placeholder(item.id)
                try:
                    self.store.set_cached_commute(placeholder, ttl=PLACEHOLDER_TTL)
                except sqlite3.Error as cache_err:
                    logger.warning(
                        "[commute] Could not cache placeholder for %s: %s", item.id, cache_err
                    )
                results.append(placeholder)
        return results

    def commutes_for(self, items: List[CommuteInput]) -> Dict[str, object]:
        """Cache-first batch: {commutes: {id: commute}, cached: n, computed: n}."""
        cached = self.store.get_cached_commutes([i.id for i in items])
        uncached = [i for i in items if i.id not in cached]
        logger.info("[commute] %d cached, %d to compute", len(cached), len(uncached))
        computed = self.compute_commutes(uncached) if uncached else []
        merged = {str(pid): c.to_dict() for pid, c in cached.items()}
        merged.update({str(c.property_id): c.to_dict() for c in computed})
        return {"commutes": merged, "cached": len(cached), "computed": len(computed)}

    def flush(self) -> int:
        count = self.store.flush_commutes()
        logger.info("[commute] Flushed %d cached commutes", count)
        return count
