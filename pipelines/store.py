"""Canonical SharedProperty storage: in-memory and Parquet-backed."""

from __future__ import annotations

import copy
import json
import logging
import math
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import pandas as pd

from listing_schema import GeoLocation, SharedProperty


logger = logging.getLogger(__name__)

STORE_COLUMNS = [
    "id",
    "address",
    "city",
    "identity_key",
    "price",
    "size",
    "bedrooms",
    "listing_refs",
    "listing_owner_types",
    "listing_urls",
    "agency_names",
    "is_multiagency",
    "lat",
    "lng",
    "stage",
    "interested_buyers_count",
    "exclusivity_hint",
    "created_at",
    "updated_at",
]


class StoreError(RuntimeError):
    """Storage could not be read or written."""


class PropertyStore(Protocol):
    """Access patterns the scan and the geocoding backfill rely on."""

    def all(self) -> List[SharedProperty]: ...

    def find_by_identity(self, identity_key: str) -> Optional[SharedProperty]: ...

    def find_by_listing_refs(self, refs: Iterable[str]) -> Optional[SharedProperty]: ...

    def missing_location(self, limit: Optional[int] = None) -> List[SharedProperty]: ...

    def upsert(self, record: SharedProperty) -> SharedProperty: ...

    def set_location(self, record_id: int, location: GeoLocation) -> bool: ...


class InMemoryPropertyStore:
    """Canonical records keyed by id with identity-key and listing-ref indexes.

    Records handed out are copies; callers write back through ``upsert`` and
    ``set_location``. A non-null location is never cleared by ``upsert``.
    """

    def __init__(self, records: Optional[List[SharedProperty]] = None) -> None:
        self._lock = threading.RLock()
        self._records: Dict[int, SharedProperty] = {}
        self._by_identity: Dict[str, int] = {}
        self._by_ref: Dict[str, int] = {}
        self._next_id = 1
        for record in records or []:
            self._insert(copy.deepcopy(record))

    def _insert(self, record: SharedProperty) -> None:
        if record.id is None:
            record.id = self._next_id
        self._next_id = max(self._next_id, record.id + 1)
        previous = self._records.get(record.id)
        if previous is not None:
            for ref in previous.listing_refs:
                if self._by_ref.get(ref) == previous.id:
                    del self._by_ref[ref]
        self._records[record.id] = record
        self._by_identity[record.identity_key] = record.id
        for ref in record.listing_refs:
            self._by_ref[ref] = record.id

    def _persist(self) -> None:
        """Hook for write-through subclasses."""

    def all(self) -> List[SharedProperty]:
        with self._lock:
            return [copy.deepcopy(self._records[key]) for key in sorted(self._records)]

    def get(self, record_id: int) -> Optional[SharedProperty]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find_by_identity(self, identity_key: str) -> Optional[SharedProperty]:
        with self._lock:
            record_id = self._by_identity.get(identity_key)
            return self.get(record_id) if record_id is not None else None

    def find_by_listing_refs(self, refs: Iterable[str]) -> Optional[SharedProperty]:
        """Return the lowest-id record already holding any of ``refs``."""
        with self._lock:
            ids = {self._by_ref[ref] for ref in refs if ref in self._by_ref}
            return self.get(min(ids)) if ids else None

    def missing_location(self, limit: Optional[int] = None) -> List[SharedProperty]:
        """Return records without coordinates, oldest id first."""
        with self._lock:
            pending = [
                copy.deepcopy(self._records[key]) for key in sorted(self._records) if self._records[key].location is None
            ]
        if limit is not None:
            pending = pending[: max(0, limit)]
        return pending

    def count_missing_location(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if record.location is None)

    def upsert(self, record: SharedProperty) -> SharedProperty:
        """Insert or replace by identity key; keeps a stored location."""
        with self._lock:
            incoming = copy.deepcopy(record)
            existing_id = self._by_identity.get(incoming.identity_key)
            if existing_id is not None:
                current = self._records[existing_id]
                incoming.id = existing_id
                if incoming.location is None:
                    incoming.location = current.location
                if incoming.created_at is None:
                    incoming.created_at = current.created_at
            elif incoming.id is not None and incoming.id in self._records:
                # Identity changed for an existing id: drop the stale index entry.
                stale = self._records[incoming.id]
                self._by_identity.pop(stale.identity_key, None)
                if incoming.location is None:
                    incoming.location = stale.location
            self._insert(incoming)
            self._persist()
            return copy.deepcopy(incoming)

    def set_location(self, record_id: int, location: GeoLocation) -> bool:
        """Write coordinates once; returns False when the record is gone or already located."""
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.location is not None:
                return False
            record.location = location
            record.updated_at = datetime.now(timezone.utc)
            self._persist()
            return True


def _json_list(value: Any) -> Any:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if isinstance(value, str):
        return json.loads(value) if value else None
    return value


def _optional_number(value: Any, cast=float):
    if value is None or pd.isna(value):
        return None
    return cast(value)


def _optional_datetime(value: Any) -> Optional[datetime]:
    if value is None or (not isinstance(value, str) and pd.isna(value)) or value == "":
        return None
    return datetime.fromisoformat(str(value))


def record_to_row(record: SharedProperty) -> Dict[str, Any]:
    return {
        "id": record.id,
        "address": record.address,
        "city": record.city,
        "identity_key": record.identity_key,
        "price": record.price,
        "size": record.size,
        "bedrooms": record.bedrooms,
        "listing_refs": json.dumps(record.listing_refs, ensure_ascii=False),
        "listing_owner_types": json.dumps(record.listing_owner_types, ensure_ascii=False, sort_keys=True),
        "listing_urls": json.dumps(record.listing_urls, ensure_ascii=False, sort_keys=True),
        "agency_names": json.dumps(record.agency_names, ensure_ascii=False),
        "is_multiagency": bool(record.is_multiagency),
        "lat": record.location.lat if record.location else None,
        "lng": record.location.lng if record.location else None,
        "stage": record.stage,
        "interested_buyers_count": int(record.interested_buyers_count or 0),
        "exclusivity_hint": bool(record.exclusivity_hint),
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


def row_to_record(row: Dict[str, Any]) -> SharedProperty:
    lat = _optional_number(row.get("lat"))
    lng = _optional_number(row.get("lng"))
    city = row.get("city")
    return SharedProperty(
        id=_optional_number(row.get("id"), int),
        address=row.get("address") or "",
        city=None if city is None or (isinstance(city, float) and math.isnan(city)) else city,
        identity_key=row.get("identity_key") or "",
        price=_optional_number(row.get("price")),
        size=_optional_number(row.get("size")),
        bedrooms=_optional_number(row.get("bedrooms"), int),
        listing_refs=list(_json_list(row.get("listing_refs")) or []),
        listing_owner_types=dict(_json_list(row.get("listing_owner_types")) or {}),
        listing_urls=dict(_json_list(row.get("listing_urls")) or {}),
        agency_names=list(_json_list(row.get("agency_names")) or []),
        is_multiagency=bool(row.get("is_multiagency")),
        location=GeoLocation(lat, lng) if lat is not None and lng is not None else None,
        stage=row.get("stage") or "address_found",
        interested_buyers_count=_optional_number(row.get("interested_buyers_count"), int) or 0,
        exclusivity_hint=bool(row.get("exclusivity_hint")),
        created_at=_optional_datetime(row.get("created_at")),
        updated_at=_optional_datetime(row.get("updated_at")),
    )


def _empty_store_df() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "id": pd.Series(dtype="int64"),
            "address": pd.Series(dtype="string"),
            "city": pd.Series(dtype="string"),
            "identity_key": pd.Series(dtype="string"),
            "price": pd.Series(dtype="float64"),
            "size": pd.Series(dtype="float64"),
            "bedrooms": pd.Series(dtype="Int64"),
            "listing_refs": pd.Series(dtype="string"),
            "listing_owner_types": pd.Series(dtype="string"),
            "listing_urls": pd.Series(dtype="string"),
            "agency_names": pd.Series(dtype="string"),
            "is_multiagency": pd.Series(dtype="boolean"),
            "lat": pd.Series(dtype="float64"),
            "lng": pd.Series(dtype="float64"),
            "stage": pd.Series(dtype="string"),
            "interested_buyers_count": pd.Series(dtype="int64"),
            "exclusivity_hint": pd.Series(dtype="boolean"),
            "created_at": pd.Series(dtype="string"),
            "updated_at": pd.Series(dtype="string"),
        }
    )


class ParquetPropertyStore(InMemoryPropertyStore):
    """Write-through store persisting every mutation to a Parquet file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> List[SharedProperty]:
        if not self.path.exists():
            logger.info("Property store %s not found; starting empty.", self.path)
            return []
        try:
            df = pd.read_parquet(self.path)
        except (OSError, ValueError) as exc:
            raise StoreError(f"Cannot read property store {self.path}: {exc}") from exc
        df = df.astype(object).where(pd.notna(df), None)
        records = [row_to_record(row) for row in df.to_dict("records")]
        logger.info("Loaded %s canonical properties from %s.", len(records), self.path)
        return records

    def _persist(self) -> None:
        rows = [record_to_row(self._records[key]) for key in sorted(self._records)]
        df = pd.DataFrame(rows, columns=STORE_COLUMNS) if rows else _empty_store_df()
        if rows:
            df["bedrooms"] = pd.to_numeric(df["bedrooms"], errors="coerce").astype("Int64")
            df["price"] = pd.to_numeric(df["price"], errors="coerce")
            df["size"] = pd.to_numeric(df["size"], errors="coerce")
            df["lat"] = pd.to_numeric(df["lat"], errors="coerce")
            df["lng"] = pd.to_numeric(df["lng"], errors="coerce")
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            df.to_parquet(tmp_path, index=False, compression="snappy")
            tmp_path.replace(self.path)
        except (OSError, ValueError) as exc:
            raise StoreError(f"Cannot write property store {self.path}: {exc}") from exc
