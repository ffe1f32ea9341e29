"""Backfill missing coordinates on canonical properties using Nominatim."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import requests
from requests import Response, Session
from tqdm import tqdm

from listing_schema import GeoLocation, GeocodingFailure, GeocodingRunStats, SharedProperty
from pipelines.normalizer import is_generic_address
from pipelines.store import PropertyStore


logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
DEFAULT_USER_AGENT = "shared-property-pipeline/0.1 (geocoding backfill)"
DEFAULT_FALLBACK_CITY = "Milano"
DEFAULT_COUNTRY = "Italia"
DEFAULT_DELAY_SECONDS = 1.1


class GeocodingError(RuntimeError):
    """Transport failure, timeout, non-success status or malformed payload."""


@dataclass(frozen=True)
class AddressComponents:
    street: Optional[str] = None
    house_number: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class GeocodeCandidate:
    lat: float
    lng: float
    display_name: str = ""
    components: AddressComponents = field(default_factory=AddressComponents)

    @property
    def location(self) -> GeoLocation:
        return GeoLocation(self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeocodeCandidate":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            display_name=str(data.get("display_name") or ""),
            components=AddressComponents(**(data.get("components") or {})),
        )


# Rate-limit policies. Each exposes ``wait()``, called once after every geocoder call.


class FixedDelay:
    """Sleep a fixed number of seconds after every call."""

    def __init__(self, seconds: float = DEFAULT_DELAY_SECONDS, sleep: Callable[[float], None] = time.sleep) -> None:
        self.seconds = max(0.0, float(seconds))
        self._sleep = sleep

    def wait(self) -> None:
        if self.seconds > 0:
            self._sleep(self.seconds)


class MinIntervalRateLimiter:
    """Keep consecutive geocoder calls at least ``interval`` seconds apart.

    Time spent inside the call counts toward the interval, so a slow answer
    is followed by a shorter sleep than ``FixedDelay`` would take.
    """

    def __init__(
        self,
        interval: float = DEFAULT_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.interval = max(0.0, float(interval))
        self._clock = clock
        self._sleep = sleep
        self._released_at = clock()

    def wait(self) -> None:
        remaining = self.interval - (self._clock() - self._released_at)
        if remaining > 0:
            self._sleep(remaining)
        self._released_at = self._clock()


class NoDelay:
    def wait(self) -> None:
        return None


def _component(address: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = address.get(key)
        if value:
            return str(value)
    return None


def parse_candidate(item: Any) -> GeocodeCandidate:
    """Turn one Nominatim result object into a GeocodeCandidate."""
    if not isinstance(item, dict):
        raise GeocodingError(f"Unexpected geocoding result: {item!r}")
    try:
        lat = float(item["lat"])
        lng = float(item["lon"])
    except (KeyError, ValueError, TypeError) as exc:
        raise GeocodingError(f"Geocoding result without usable coordinates: {exc}") from exc
    address = item.get("address") or {}
    components = AddressComponents(
        street=_component(address, "road", "pedestrian", "square"),
        house_number=_component(address, "house_number"),
        city=_component(address, "city", "town", "village", "municipality"),
        region=_component(address, "state", "region", "county"),
        country=_component(address, "country"),
    )
    return GeocodeCandidate(lat=lat, lng=lng, display_name=str(item.get("display_name") or ""), components=components)


class NominatimGeocoder:
    """Forward and reverse geocoding against a Nominatim endpoint.

    Every request carries the client identifier and locale headers and a
    timeout. Connection errors, timeouts and 5xx answers are retried with a
    linear backoff; 4xx answers and malformed payloads fail at once. An empty
    result is not an error.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        accept_language: str = "it",
        country_codes: Optional[str] = "it",
        timeout: float = 20.0,
        retries: int = 3,
        backoff: float = 2.0,
        base_url: str = NOMINATIM_URL,
        session: Optional[Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not user_agent:
            raise ValueError("Nominatim requires a descriptive User-Agent")
        self.user_agent = user_agent
        self.accept_language = accept_language
        self.country_codes = country_codes
        self.timeout = timeout
        self.retries = max(1, int(retries))
        self.backoff = max(0.0, float(backoff))
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": user_agent,
                "Accept": "application/json",
                "Accept-Language": accept_language,
            }
        )
        self._sleep = sleep

    def _request(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/{path}"
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                response: Response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_exc = exc
                logger.warning("Geocoding request failed (attempt %s/%s) for %s: %s", attempt, self.retries, url, exc)
            else:
                if response.status_code >= 500:
                    last_exc = GeocodingError(f"HTTP {response.status_code} from {url}")
                    logger.warning(
                        "Geocoding service error (attempt %s/%s): HTTP %s", attempt, self.retries, response.status_code
                    )
                elif response.status_code >= 400:
                    raise GeocodingError(f"HTTP {response.status_code} from {url}")
                else:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise GeocodingError(f"Malformed geocoding payload from {url}") from exc
            if attempt < self.retries:
                self._sleep(self.backoff * attempt)
        raise GeocodingError(f"Geocoding request to {url} failed after {self.retries} attempts: {last_exc}") from last_exc

    def forward(self, query: str) -> List[GeocodeCandidate]:
        params: Dict[str, Any] = {"format": "jsonv2", "addressdetails": 1, "limit": 1, "q": query}
        if self.country_codes:
            params["countrycodes"] = self.country_codes
        data = self._request("search", params)
        if not isinstance(data, list):
            raise GeocodingError(f"Unexpected search payload type: {type(data).__name__}")
        return [parse_candidate(item) for item in data]

    def reverse(self, lat: float, lng: float) -> Optional[GeocodeCandidate]:
        params = {"format": "jsonv2", "addressdetails": 1, "lat": lat, "lon": lng}
        data = self._request("reverse", params)
        if isinstance(data, dict) and data.get("error"):
            return None
        if not data:
            return None
        return parse_candidate(data)


def cache_key(query: str) -> str:
    """Return the normalized cache key."""
    return " ".join((query or "").strip().lower().split())


def cache_load(path: str) -> Dict[str, Dict[str, object]]:
    """Load cache data from JSON file."""
    cache_path = Path(path)
    if not cache_path.exists():
        return {}
    try:
        with cache_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
            if isinstance(data, dict):
                return data
    except (json.JSONDecodeError, OSError):
        logger.warning("Failed to load cache from %s; starting with empty cache.", path)
    return {}


def cache_save(path: str, cache: Dict[str, Dict[str, object]]) -> None:
    """Persist cache to disk; a crash mid-write leaves the previous file intact."""
    cache_path = Path(path)
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = cache_path.with_suffix(cache_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(cache, handle, ensure_ascii=False, indent=2)
    tmp_path.replace(cache_path)


class CachedGeocoder:
    """Wrap a geocoder with a JSON file cache of answered queries, empty answers included.

    New answers are written out every ``flush_every`` misses; call ``flush()``
    when the run ends to save the rest.
    """

    def __init__(self, inner, cache_path: str, flush_every: int = 20) -> None:
        self.inner = inner
        self.cache_path = cache_path
        self.cache = cache_load(cache_path)
        self.flush_every = max(1, int(flush_every))
        self.hits = 0
        self.misses = 0
        self._pending = 0

    def flush(self) -> None:
        if not self._pending:
            return
        cache_save(self.cache_path, self.cache)
        logger.debug("Saved %s new geocoding answers to %s.", self._pending, self.cache_path)
        self._pending = 0

    def _remember(self, key: str, candidates: List[GeocodeCandidate]) -> None:
        self.cache[key] = {
            "candidates": [candidate.to_dict() for candidate in candidates],
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        self._pending += 1
        if self._pending >= self.flush_every:
            self.flush()

    def _lookup(self, key: str) -> Optional[List[GeocodeCandidate]]:
        entry = self.cache.get(key)
        if not isinstance(entry, dict):
            return None
        try:
            candidates = [GeocodeCandidate.from_dict(item) for item in entry.get("candidates") or []]
        except (KeyError, ValueError, TypeError):
            logger.warning("Ignoring malformed cache entry for %s.", key)
            return None
        self.hits += 1
        return candidates

    def forward(self, query: str) -> List[GeocodeCandidate]:
        key = cache_key(query)
        cached = self._lookup(key)
        if cached is not None:
            return cached
        self.misses += 1
        candidates = self.inner.forward(query)
        self._remember(key, candidates)
        return candidates

    def reverse(self, lat: float, lng: float) -> Optional[GeocodeCandidate]:
        key = f"reverse|{lat:.6f}|{lng:.6f}"
        cached = self._lookup(key)
        if cached is not None:
            return cached[0] if cached else None
        self.misses += 1
        candidate = self.inner.reverse(lat, lng)
        self._remember(key, [candidate] if candidate is not None else [])
        return candidate


def build_query(
    address: Optional[str],
    city: Optional[str],
    country: str = DEFAULT_COUNTRY,
    fallback_city: str = DEFAULT_FALLBACK_CITY,
) -> Optional[str]:
    """Construct the geocoding query string; None when there is no address."""
    if not address or not address.strip():
        return None
    parts = [
        part.strip()
        for part in [address, (city or "").strip() or fallback_city, country or ""]
        if part and part.strip()
    ]
    return ", ".join(parts)


def has_usable_address(record: SharedProperty) -> bool:
    return bool(record.address and record.address.strip()) and not is_generic_address(record.address)


def _snapshot(stats: GeocodingRunStats) -> GeocodingRunStats:
    return replace(stats, errors=list(stats.errors))


def backfill_missing_coordinates(
    store: PropertyStore,
    geocoder,
    limit: Optional[int] = None,
    on_progress: Optional[Callable[[GeocodingRunStats], None]] = None,
    rate_limit=None,
    fallback_city: str = DEFAULT_FALLBACK_CITY,
    country: str = DEFAULT_COUNTRY,
    progress_every: int = 10,
    max_errors: int = 100,
    show_progress: bool = False,
) -> GeocodingRunStats:
    """Geocode canonical properties that still lack a location.

    Records are selected once at start, queued and worked off one at a time.
    Each found location is written to the store straight away, so an aborted
    run keeps its progress and the next run resumes with what is left.
    """
    rate_limit = rate_limit if rate_limit is not None else FixedDelay(DEFAULT_DELAY_SECONDS)
    queue: Deque[SharedProperty] = deque(store.missing_location(limit))
    stats = GeocodingRunStats(total=len(queue))
    logger.info("Geocoding backfill started for %s properties.", stats.total)

    def record_failure(record: SharedProperty, message: str) -> None:
        stats.failed += 1
        logger.warning("Geocoding failed for property %s (%s): %s", record.id, record.address, message)
        if len(stats.errors) < max_errors:
            stats.errors.append(GeocodingFailure(id=record.id, address=record.address, error=message))
        else:
            stats.capped = True

    progress = tqdm(total=stats.total, desc="Geocoding", unit="property", disable=not show_progress)
    try:
        while queue:
            record = queue.popleft()
            query = build_query(record.address, record.city, country, fallback_city) if has_usable_address(record) else None
            if query is None:
                stats.skipped += 1
                logger.debug("Skipping property %s: no usable address.", record.id)
            else:
                try:
                    candidates = geocoder.forward(query)
                except Exception as exc:  # pylint: disable=broad-except
                    record_failure(record, str(exc) or type(exc).__name__)
                else:
                    if not candidates:
                        record_failure(record, f"No geocoding result for {query!r}")
                    elif store.set_location(record.id, candidates[0].location):
                        stats.successful += 1
                        logger.debug("Located property %s at %s.", record.id, candidates[0].location)
                    else:
                        stats.skipped += 1
                        logger.debug("Property %s already has a location; leaving it.", record.id)
                finally:
                    rate_limit.wait()
            stats.processed += 1
            progress.update(1)
            if on_progress is not None and progress_every > 0 and stats.processed % progress_every == 0:
                on_progress(_snapshot(stats))
    finally:
        progress.close()

    if on_progress is not None:
        on_progress(_snapshot(stats))
    logger.info(
        "Geocoding backfill finished: %s processed, %s successful, %s failed, %s skipped.",
        stats.processed,
        stats.successful,
        stats.failed,
        stats.skipped,
    )
    return stats


def format_report(stats: GeocodingRunStats) -> str:
    lines = [
        f"Total: {stats.total}  | Processed: {stats.processed}  | Successful: {stats.successful}"
        f"  | Failed: {stats.failed}  | Skipped: {stats.skipped}  | Errors capped: {str(stats.capped).lower()}"
    ]
    for failure in stats.errors:
        lines.append(f"  - [{failure.id}] {failure.address}: {failure.error}")
    return "\n".join(lines)
