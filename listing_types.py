"""
Data model for listings, notifications, subscriptions and enrichment.

Listing mirrors the subset of the e-housing.jp property object that the
pipeline reasons about; the full upstream dict rides along in ``raw`` so
the cached snapshot can be served back unchanged.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from errors import ValidationError

LISTING_BASE_URL = "https://e-housing.jp/rent"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_property_url(
    prefecture_slug: str, ward_slug: str, slug: str, room_number: str
) -> str:
    """Canonical e-housing.jp URL for one listing."""
    return f"{LISTING_BASE_URL}/{prefecture_slug}/{ward_slug}/{slug}/{room_number}"


def _as_number(value, default=0):
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# =============================================================================
# Listings
# =============================================================================

@dataclass(frozen=True)
class Station:
    name: str
    walking_minutes: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Station":
        meta = data.get("meta_data") or {}
        return cls(
            name=data.get("name") or "",
            walking_minutes=int(_as_number(meta.get("pivot_walking_distance_minutes"))),
        )


@dataclass(frozen=True)
class Listing:
    """One rental property from the upstream search. Immutable once fetched."""
    id: int
    name: str
    latitude: float
    longitude: float
    rent_amount: int
    size_sqm: float
    bed_rooms: int
    layout: str
    key_money: int
    security_deposit: int
    stations: Tuple[Station, ...]
    slug: str
    room_number: str
    ward_slug: str
    prefecture_slug: str
    created_at: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False, hash=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Listing":
        """Build from an upstream property dict. Raises ValueError without an id."""
        listing_id = data.get("id")
        if isinstance(listing_id, bool) or not isinstance(listing_id, int):
            raise ValueError(f"listing has no integer id: {listing_id!r}")
        ward = data.get("ward") or {}
        prefecture = data.get("prefecture") or {}
        stations = tuple(
            Station.from_dict(s)
            for s in (data.get("trainStations") or [])
            if isinstance(s, dict)
        )
        return cls(
            id=listing_id,
            name=data.get("name") or "",
            latitude=float(_as_number(data.get("latitude"))),
            longitude=float(_as_number(data.get("longitude"))),
            rent_amount=int(_as_number(data.get("rent_amount"))),
            size_sqm=_as_number(data.get("size_sqm")),
            bed_rooms=int(_as_number(data.get("bed_rooms"))),
            layout=data.get("layout") or "",
            key_money=int(_as_number(data.get("key_money"))),
            security_deposit=int(_as_number(data.get("security_deposit"))),
            stations=stations,
            slug=data.get("slug") or "",
            room_number=str(data.get("room_number") or ""),
            ward_slug=ward.get("slug") or "",
            prefecture_slug=prefecture.get("slug") or "",
            created_at=data.get("created_at") or "",
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.raw:
            return dict(self.raw)
        return {
            "id": self.id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "rent_amount": self.rent_amount,
            "size_sqm": self.size_sqm,
            "bed_rooms": self.bed_rooms,
            "layout": self.layout,
            "key_money": self.key_money,
            "security_deposit": self.security_deposit,
            "slug": self.slug,
            "room_number": self.room_number,
            "created_at": self.created_at,
            "ward": {"slug": self.ward_slug},
            "prefecture": {"slug": self.prefecture_slug},
            "trainStations": [
                {
                    "name": s.name,
                    "meta_data": {"pivot_walking_distance_minutes": s.walking_minutes},
                }
                for s in self.stations
            ],
        }

    def nearest_station(self) -> Optional[Station]:
        """Station with the shortest walk; the first one wins ties."""
        nearest = None
        for station in self.stations:
            if nearest is None or station.walking_minutes < nearest.walking_minutes:
                nearest = station
        return nearest

    @property
    def url(self) -> str:
        return build_property_url(
            self.prefecture_slug, self.ward_slug, self.slug, self.room_number
        )


@dataclass
class ListingsMeta:
    """Pagination block that accompanies the listings array."""
    total: int
    per_page: int = 0
    current_page: int = 1
    last_page: int = 1
    next_page_url: Optional[str] = None
    previous_page_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListingsMeta":
        return cls(
            total=int(_as_number(data.get("total"))),
            per_page=int(_as_number(data.get("per_page"))),
            current_page=int(_as_number(data.get("current_page"), 1)),
            last_page=int(_as_number(data.get("last_page"), 1)),
            next_page_url=data.get("next_page_url"),
            previous_page_url=data.get("previous_page_url"),
        )


@dataclass
class ParsedPage:
    listings: List[Listing]
    meta: Optional[ListingsMeta] = None


# =============================================================================
# Filter settings
# =============================================================================

def _int_list(data: Dict[str, Any], key: str) -> List[int]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list of integers")
    out = []
    for item in value:
        if isinstance(item, bool):
            raise ValidationError(f"{key} must be a list of integers")
        try:
            out.append(int(item))
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a list of integers")
    return out


def _optional_int(data: Dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    if key not in data:
        return default
    value = data[key]
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


@dataclass
class FilterSettings:
    """Saved search that parameterizes the upstream request."""
    wards: List[int] = field(default_factory=lambda: [1, 2, 4, 5, 9])
    price_from: int = 0
    price_to: Optional[int] = 260000
    area_from: Optional[int] = 45
    area_to: Optional[int] = None  # None = "100+" (unbounded)
    walking_distance_to: Optional[int] = 12
    features: List[int] = field(default_factory=lambda: [18])
    stations: List[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterSettings":
        """Validate and build settings. Raises ValidationError."""
        if not isinstance(data, dict):
            raise ValidationError("Filter settings must be a JSON object")
        defaults = cls()
        wards = _int_list(data, "wards")
        if not wards:
            raise ValidationError("At least one ward must be selected")
        return cls(
            wards=wards,
            price_from=_optional_int(data, "price_from", defaults.price_from) or 0,
            price_to=_optional_int(data, "price_to", defaults.price_to),
            area_from=_optional_int(data, "area_from", defaults.area_from),
            area_to=_optional_int(data, "area_to", defaults.area_to),
            walking_distance_to=_optional_int(
                data, "walking_distance_to", defaults.walking_distance_to
            ),
            features=_int_list(data, "features") if "features" in data else defaults.features,
            stations=_int_list(data, "stations"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wards": list(self.wards),
            "price_from": self.price_from,
            "price_to": self.price_to,
            "area_from": self.area_from,
            "area_to": self.area_to,
            "walking_distance_to": self.walking_distance_to,
            "features": list(self.features),
            "stations": list(self.stations),
        }


# =============================================================================
# Notifications and push subscriptions
# =============================================================================

@dataclass
class NotificationRecord:
    """Denormalized summary of one newly detected listing."""
    id: str
    property_id: int
    property_name: str
    rent_amount: int
    size_sqm: float
    bed_rooms: int
    layout: str
    nearest_station: str
    walking_minutes: int
    slug: str
    room_number: str
    prefecture_slug: str
    ward_slug: str
    timestamp: str

    @classmethod
    def for_listing(cls, listing: Listing, now: datetime) -> "NotificationRecord":
        nearest = listing.nearest_station()
        return cls(
            id=f"{listing.id}-{int(now.timestamp() * 1000)}",
            property_id=listing.id,
            property_name=listing.name,
            rent_amount=listing.rent_amount,
            size_sqm=listing.size_sqm,
            bed_rooms=listing.bed_rooms,
            layout=listing.layout,
            nearest_station=nearest.name if nearest else "Unknown",
            walking_minutes=nearest.walking_minutes if nearest else 0,
            slug=listing.slug,
            room_number=listing.room_number,
            prefecture_slug=listing.prefecture_slug,
            ward_slug=listing.ward_slug,
            timestamp=now.isoformat(),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationRecord":
        return cls(
            id=data["id"],
            property_id=data["propertyId"],
            property_name=data.get("propertyName", ""),
            rent_amount=data.get("rentAmount", 0),
            size_sqm=data.get("sizeSqm", 0),
            bed_rooms=data.get("bedRooms", 0),
            layout=data.get("layout", ""),
            nearest_station=data.get("nearestStation", "Unknown"),
            walking_minutes=data.get("walkingMinutes", 0),
            slug=data.get("slug", ""),
            room_number=data.get("roomNumber", ""),
            prefecture_slug=data.get("prefectureSlug", ""),
            ward_slug=data.get("wardSlug", ""),
            timestamp=data.get("timestamp", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "propertyId": self.property_id,
            "propertyName": self.property_name,
            "rentAmount": self.rent_amount,
            "sizeSqm": self.size_sqm,
            "bedRooms": self.bed_rooms,
            "layout": self.layout,
            "nearestStation": self.nearest_station,
            "walkingMinutes": self.walking_minutes,
            "slug": self.slug,
            "roomNumber": self.room_number,
            "prefectureSlug": self.prefecture_slug,
            "wardSlug": self.ward_slug,
            "timestamp": self.timestamp,
        }


@dataclass
class PushSubscriptionRecord:
    endpoint: str
    p256dh: str
    auth: str
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushSubscriptionRecord":
        """Build from a browser PushSubscription JSON. Raises ValidationError."""
        if not isinstance(data, dict):
            raise ValidationError("Invalid subscription data")
        endpoint = data.get("endpoint")
        keys = data.get("keys")
        if not endpoint or not isinstance(keys, dict):
            raise ValidationError("Invalid subscription data")
        return cls(
            endpoint=endpoint,
            p256dh=keys.get("p256dh", ""),
            auth=keys.get("auth", ""),
            created_at=data.get("createdAt") or utc_now_iso(),
        )

    def subscription_info(self) -> Dict[str, Any]:
        """Shape expected by pywebpush."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    def to_dict(self) -> Dict[str, Any]:
        info = self.subscription_info()
        info["createdAt"] = self.created_at
        return info


# =============================================================================
# Enrichment
# =============================================================================

@dataclass
class AmenityCounts:
    supermarkets: int = 0
    restaurants: int = 0
    convenience: int = 0
    parks: int = 0


@dataclass
class LivabilityScore:
    property_id: int
    overall: float
    station: int
    supermarkets: int
    restaurants: int
    convenience: int
    parks: int
    counts: AmenityCounts
    nearest_station_minutes: int
    computed_at: str

    @classmethod
    def placeholder(cls, property_id: int, nearest_station_minutes: int) -> "LivabilityScore":
        """Zero score returned when enrichment failed for one listing."""
        return cls(
            property_id=property_id,
            overall=0.0,
            station=0,
            supermarkets=0,
            restaurants=0,
            convenience=0,
            parks=0,
            counts=AmenityCounts(),
            nearest_station_minutes=nearest_station_minutes,
            computed_at=utc_now_iso(),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LivabilityScore":
        counts = data.get("counts") or {}
        return cls(
            property_id=data["propertyId"],
            overall=data["overall"],
            station=data["station"],
            supermarkets=data["supermarkets"],
            restaurants=data["restaurants"],
            convenience=data["convenience"],
            parks=data["parks"],
            counts=AmenityCounts(
                supermarkets=counts.get("supermarkets", 0),
                restaurants=counts.get("restaurants", 0),
                convenience=counts.get("convenience", 0),
                parks=counts.get("parks", 0),
            ),
            nearest_station_minutes=counts.get("nearestStationMinutes", 0),
            computed_at=data.get("computedAt", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "propertyId": self.property_id,
            "overall": self.overall,
            "station": self.station,
            "supermarkets": self.supermarkets,
            "restaurants": self.restaurants,
            "convenience": self.convenience,
            "parks": self.parks,
            "counts": {
                "supermarkets": self.counts.supermarkets,
                "restaurants": self.counts.restaurants,
                "convenience": self.counts.convenience,
                "parks": self.counts.parks,
                "nearestStationMinutes": self.nearest_station_minutes,
            },
            "computedAt": self.computed_at,
        }


@dataclass
class CommuteInfo:
    property_id: int
    duration_minutes: int
    duration_text: str
    transfer_count: int
    computed_at: str

    @classmethod
    def placeholder(cls, property_id: int) -> "CommuteInfo":
        return cls(
            property_id=property_id,
            duration_minutes=0,
            duration_text="",
            transfer_count=0,
            computed_at=utc_now_iso(),
        )

    @property
    def is_placeholder(self) -> bool:
        return self.duration_minutes == 0 and not self.duration_text

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommuteInfo":
        return cls(
            property_id=data["propertyId"],
            duration_minutes=data.get("durationMinutes", 0),
            duration_text=data.get("durationText", ""),
            transfer_count=data.get("transferCount", 0),
            computed_at=data.get("computedAt", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "propertyId": self.property_id,
            "durationMinutes": self.duration_minutes,
            "durationText": self.duration_text,
            "transferCount": self.transfer_count,
            "computedAt": self.computed_at,
        }


# =============================================================================
# Cycle results
# =============================================================================

@dataclass
class PollResult:
    success: bool
    timestamp: str
    total_listings: int = 0
    new_listings: int = 0
    new_properties: List[Listing] = field(default_factory=list)
    seeded: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "success": self.success,
            "timestamp": self.timestamp,
            "totalListings": self.total_listings,
            "newListings": self.new_listings,
            "newProperties": [p.to_dict() for p in self.new_properties],
            "seeded": self.seeded,
        }
        if self.error is not None:
            out["error"] = self.error
        return out
