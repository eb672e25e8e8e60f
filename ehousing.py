"""
Outbound fetch of the e-housing.jp rental search.

Builds the search URL from the saved FilterSettings, requests it the way a
desktop browser would (no caching anywhere along the way) and hands the
HTML to a ListingExtractor.
"""

import logging
import time
from typing import List, Optional, Tuple
from urllib.parse import urlencode

import requests

from ap_trace import get_trace
from errors import UpstreamUnavailable
from listing_types import FilterSettings, ParsedPage
from rsc_extract import ListingExtractor, RscPayloadExtractor

logger = logging.getLogger(__name__)

SEARCH_BASE_URL = "https://e-housing.jp/rent"

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

# e-housing ward ids -> names the site expects in the ``wname`` param.
WARD_NAMES = {
    1: "Minato Ward",
    2: "Shibuya Ward",
    4: "Meguro Ward",
    5: "Setagaya Ward",
    9: "Shinagawa Ward",
}

# Four corners (lng, lat) of the Tokyo metro map viewport the site sends.
METRO_BOUNDING_BOX = (
    (139.43616821481683, 35.482771620001955),
    (139.43616821481683, 35.80585431502774),
    (140.01432367508613, 35.80585431502774),
    (140.01432367508613, 35.482771620001955),
)


def _join_ids(ids) -> str:
    return ",".join(str(i) for i in ids)


def search_params(settings: FilterSettings) -> List[Tuple[str, str]]:
    """Serialize FilterSettings into the site's query parameter schema."""
    params = [
        ("wards", _join_ids(settings.wards)),
        ("price_from", str(settings.price_from or 0)),
    ]
    if settings.price_to is not None:
        params.append(("price_to", str(settings.price_to)))
    names = [WARD_NAMES[w] for w in settings.wards if w in WARD_NAMES]
    if names:
        params.append(("wname", ",".join(names)))
    if settings.features:
        params.append(("features", _join_ids(settings.features)))
    if settings.area_from is not None:
        params.append(("area_from", str(settings.area_from)))
    params.append(("area_to", "100+" if settings.area_to is None else str(settings.area_to)))
    if settings.walking_distance_to is not None:
        params.append(("walking_distance_to", str(settings.walking_distance_to)))
    if settings.stations:
        params.append(("stations", _join_ids(settings.stations)))
    for lng, lat in METRO_BOUNDING_BOX:
        params.append(("location_point", f"{lng},{lat}"))
    return params


def build_search_url(settings: FilterSettings) -> str:
    return f"{SEARCH_BASE_URL}?{urlencode(search_params(settings))}"


class ListingFetcher:
    """Fetches one search page and parses it into listings."""

    def __init__(
        self,
        extractor: Optional[ListingExtractor] = None,
        timeout: int = 20,
    ):
        self.extractor = extractor or RscPayloadExtractor()
        self.timeout = timeout

    def fetch_html(self, settings: FilterSettings) -> str:
        url = build_search_url(settings)
        start = time.monotonic()
        trace = get_trace()
        session = requests.Session()
        session.trust_env = False
        try:
            resp = session.get(url, headers=BROWSER_HEADERS, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            if trace:
                trace.record_api_call(
                    service="ehousing",
                    endpoint="search",
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=0,
                    provider_status="exception",
                )
            raise UpstreamUnavailable(f"Failed to fetch e-housing: {e}") from e
        finally:
            session.close()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if trace:
            trace.record_api_call(
                service="ehousing",
                endpoint="search",
                elapsed_ms=elapsed_ms,
                status_code=resp.status_code,
            )
        if not resp.ok:
            raise UpstreamUnavailable(
                f"Failed to fetch e-housing: {resp.status_code} {resp.reason}",
                status=resp.status_code,
                reason=resp.reason or "",
            )
        return resp.text

    def fetch(self, settings: FilterSettings) -> ParsedPage:
        html = self.fetch_html(settings)
        page = self.extractor.extract(html)
        logger.info(
            "[fetch] Parsed %d listings (total: %s)",
            len(page.listings),
            page.meta.total if page.meta else "unknown",
        )
        return page
