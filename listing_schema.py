from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import hashlib
import math
import re


OWNER_PRIVATE = "private"
OWNER_AGENCY = "agency"

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"
CONFIDENCE_RANK = {CONFIDENCE_HIGH: 0, CONFIDENCE_MEDIUM: 1, CONFIDENCE_LOW: 2}

STAGES = ("address_found", "owner_found", "owner_contacted", "result")


@dataclass(frozen=True)
class RawListing:
    source: str
    external_id: Optional[str]
    address: str
    city: Optional[str] = None
    price: Optional[float] = None
    size: Optional[float] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    floor: Optional[str] = None
    title: str = ""
    description: str = ""
    contact: str = ""
    url: Optional[str] = None
    image_hashes: Tuple[str, ...] = ()
    advertiser: Optional[str] = None
    contact_type: Optional[str] = None
    agency_id: Optional[str] = None
    agency_name: Optional[str] = None
    observed_at: Optional[datetime] = None

    @property
    def ref(self) -> str:
        if self.external_id:
            return f"{self.source}:{self.external_id}"
        parts = [
            (self.address or "").strip().lower(),
            (self.city or "").strip().lower(),
            "" if self.price is None else f"{float(self.price):.0f}",
            "" if self.size is None else f"{float(self.size):.1f}",
            (self.title or "").strip().lower(),
        ]
        digest = hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:16]
        return f"{self.source}:{digest}"


@dataclass(frozen=True)
class NormalizedAddress:
    street: str
    house_number: Optional[str]
    city: Optional[str]
    display: str

    @property
    def is_structured(self) -> bool:
        return bool(self.street and self.house_number)

    @property
    def key(self) -> str:
        """Comparable street + number form."""
        return " ".join(part for part in (self.street, self.house_number) if part)


@dataclass(frozen=True)
class OwnershipClassification:
    owner_type: str
    agency_name: Optional[str]
    confidence: str
    reasoning: str
    rule: str


@dataclass(frozen=True)
class GeoLocation:
    lat: float
    lng: float


@dataclass
class SharedProperty:
    address: str
    city: Optional[str]
    identity_key: str
    price: Optional[float] = None
    size: Optional[float] = None
    bedrooms: Optional[int] = None
    listing_refs: List[str] = field(default_factory=list)
    listing_owner_types: Dict[str, str] = field(default_factory=dict)
    listing_urls: Dict[str, str] = field(default_factory=dict)
    agency_names: List[str] = field(default_factory=list)
    is_multiagency: bool = False
    location: Optional[GeoLocation] = None
    stage: str = "address_found"
    interested_buyers_count: int = 0
    exclusivity_hint: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def owner_type_summary(self) -> Dict[str, int]:
        summary = {OWNER_PRIVATE: 0, OWNER_AGENCY: 0}
        for owner_type in self.listing_owner_types.values():
            summary[owner_type] = summary.get(owner_type, 0) + 1
        return summary


@dataclass
class ScanRunStats:
    total_listings: int = 0
    clusters_found: int = 0
    multiagency_count: int = 0
    exclusive_count: int = 0
    properties_created: int = 0
    properties_updated: int = 0
    properties_unchanged: int = 0
    clusters_skipped: int = 0
    rule_merges: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class GeocodingFailure:
    id: Optional[int]
    address: Optional[str]
    error: str


@dataclass
class GeocodingRunStats:
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[GeocodingFailure] = field(default_factory=list)
    capped: bool = False


LISTING_COLUMNS = [
    "source",
    "external_id",
    "address",
    "city",
    "price",
    "size",
    "bedrooms",
    "bathrooms",
    "floor",
    "title",
    "description",
    "contact",
    "url",
    "image_hashes",
    "advertiser",
    "contact_type",
    "agency_id",
    "agency_name",
    "observed_at",
]

COLUMN_ALIASES = {
    "portal": "source",
    "portal_source": "source",
    "property_id": "external_id",
    "id": "external_id",
    "address_street": "address",
    "address_town": "city",
    "floor_area": "size",
    "size_m2": "size",
    "room_number": "bedrooms",
    "property_name": "title",
    "link": "url",
    "photo_fingerprints": "image_hashes",
    "advertiser_type": "advertiser",
    "updated_at": "observed_at",
}


def sanitize_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    if isinstance(value, str):
        cleaned = value.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")
        cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
        return cleaned.strip()
    return str(value).strip()
