"""
Livability score per listing from nearby amenities.

One composite Overpass query per listing counts supermarkets, restaurants,
convenience stores and parks around the listing. Each count (and the walk
to the nearest station) goes through a fixed step function from
scoring_config, and the overall score is the weighted sum.

Batches run strictly sequentially with a fixed pause between Overpass
calls; the public instances tolerate roughly one query every couple of
seconds, so this must not be parallelized.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from errors import EnrichmentUnavailable
from listing_types import AmenityCounts, LivabilityScore, utc_now_iso
from models import Store
from overpass_http import OverpassHTTPClient
from scoring_config import SCORING_MODEL, apply_steps, round_half_up

logger = logging.getLogger(__name__)

RATE_LIMIT_DELAY = 2.0  # seconds between Overpass calls within a batch
DEFAULT_STATION_MINUTES = 15

SUPERMARKET_RADIUS_M = 500
RESTAURANT_RADIUS_M = 500
CONVENIENCE_RADIUS_M = 300
PARK_RADIUS_M = 500


@dataclass
class ScoreInput:
    id: int
    latitude: float
    longitude: float
    nearest_station_minutes: int = DEFAULT_STATION_MINUTES


def build_amenity_query(lat: float, lng: float) -> str:
    return (
        "[out:json][timeout:15];\n"
        "(\n"
        f"  node[shop=supermarket](around:{SUPERMARKET_RADIUS_M},{lat},{lng});\n"
        f"  node[amenity=restaurant](around:{RESTAURANT_RADIUS_M},{lat},{lng});\n"
        f"  node[shop=convenience](around:{CONVENIENCE_RADIUS_M},{lat},{lng});\n"
        f"  way[leisure=park](around:{PARK_RADIUS_M},{lat},{lng});\n"
        f"  node[leisure=park](around:{PARK_RADIUS_M},{lat},{lng});\n"
        ");\n"
        "out tags;"
    )


def count_amenities(elements: List[dict]) -> AmenityCounts:
    """Bucket Overpass elements by tag. Each element counts once."""
    counts = AmenityCounts()
    for el in elements:
        tags = el.get("tags") or {}
        if tags.get("shop") == "supermarket":
            counts.supermarkets += 1
        elif tags.get("amenity") == "restaurant":
            counts.restaurants += 1
        elif tags.get("shop") == "convenience":
            counts.convenience += 1
        elif tags.get("leisure") == "park":
            counts.parks += 1
    return counts


def score_from_counts(
    property_id: int, counts: AmenityCounts, nearest_station_minutes: int
) -> LivabilityScore:
    model = SCORING_MODEL
    station = apply_steps(model.station, nearest_station_minutes)
    supermarkets = apply_steps(model.supermarkets, counts.supermarkets)
    restaurants = apply_steps(model.restaurants, counts.restaurants)
    convenience = apply_steps(model.convenience, counts.convenience)
    parks = apply_steps(model.parks, counts.parks)

    w = model.weights
    overall = round_half_up(
        station * w.station
        + supermarkets * w.supermarkets
        + restaurants * w.restaurants
        + convenience * w.convenience
        + parks * w.parks,
        1,
    )
    return LivabilityScore(
        property_id=property_id,
        overall=overall,
        station=station,
        supermarkets=supermarkets,
        restaurants=restaurants,
        convenience=convenience,
        parks=parks,
        counts=counts,
        nearest_station_minutes=nearest_station_minutes,
        computed_at=utc_now_iso(),
    )


class LivabilityEngine:
    def __init__(
        self,
        store: Store,
        client: Optional[OverpassHTTPClient] = None,
        delay: float = RATE_LIMIT_DELAY,
    ):
        self.store = store
        self.client = client or OverpassHTTPClient()
        self.delay = delay

    def fetch_amenity_counts(self, lat: float, lng: float) -> AmenityCounts:
        data = self.client.query(build_amenity_query(lat, lng), caller="livability")
        elements = data.get("elements") if isinstance(data, dict) else None
        if not isinstance(elements, list):
            raise EnrichmentUnavailable("Overpass response has no elements list")
        return count_amenities(elements)

    def compute_score(self, item: ScoreInput) -> LivabilityScore:
        """Cached score, or query + score + cache. Raises EnrichmentUnavailable."""
        cached = self.store.get_cached_score(item.id)
        if cached:
            return cached
        return self._compute_uncached(item)

    def _compute_uncached(self, item: ScoreInput) -> LivabilityScore:
        counts = self.fetch_amenity_counts(item.latitude, item.longitude)
        score = score_from_counts(item.id, counts, item.nearest_station_minutes)
        self.store.set_cached_score(score)
        return score

    def compute_scores(self, items: List[ScoreInput]) -> List[LivabilityScore]:
        """One result per input, in order. Failures become zero placeholders."""
        scores = []
        called = False
        for item in items:
            cached = self.store.get_cached_score(item.id)
            if cached:
                scores.append(cached)
                continue
            if called and self.delay:
                time.sleep(self.delay)
            called = True
            try:
                scores.append(self._compute_uncached(item))
            except Exception as e:
                logger.error(
                    "[livability] Failed to compute score for property %s: %s", item.id, e
                )
                scores.append(
                    LivabilityScore.placeholder(item.id, item.nearest_station_minutes)
                )
        return scores

    def scores_for(self, items: List[ScoreInput]) -> Dict[str, object]:
        """Cache-first batch: {scores: {id: score}, cached: n, computed: n}."""
        cached = self.store.get_cached_scores([i.id for i in items])
        uncached = [i for i in items if i.id not in cached]
        logger.info("[livability] %d cached, %d to compute", len(cached), len(uncached))
        computed = self.compute_scores(uncached) if uncached else []
        merged = {str(pid): s.to_dict() for pid, s in cached.items()}
        merged.update({str(s.property_id): s.to_dict() for s in computed})
        return {"scores": merged, "cached": len(cached), "computed": len(computed)}
