"""
Merge listing clusters into canonical SharedProperty records.

A scan normalizes the listing stream, clusters duplicates, classifies every
listing's owner and upserts one canonical record per cluster, matched by the
address + city identity.  Canonical records are never deleted and a stored
location is never overwritten, so scans and the geocoding backfill can run
against the same store.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from listing_schema import (
    CONFIDENCE_RANK,
    OWNER_AGENCY,
    OWNER_PRIVATE,
    STAGES,
    OwnershipClassification,
    RawListing,
    ScanRunStats,
    SharedProperty,
)
from pipelines.deduplicate import PropertyCluster, cluster_listings
from pipelines.normalizer import ascii_fold, identity_key, is_generic_address, normalize_address
from pipelines.owner_classifier import classify_listing
from pipelines.similarity import MatchThresholds, PreparedListing
from pipelines.store import PropertyStore


logger = logging.getLogger(__name__)

EXCLUSIVITY_KEYWORDS = ("esclusiva", "esclusivita", "exclusive", "in exclusivity")

_SCAN_LOCK = threading.Lock()


class ScanInProgressError(RuntimeError):
    """Raised when a scan is triggered while another one is running."""


def normalize_agency_name(name: Optional[str]) -> str:
    """Fold accents, case and punctuation so agency spellings compare equal."""
    return re.sub(r"[.,\s\-'&]", "", ascii_fold((name or "").strip()))


def agency_identity(listing: RawListing, classification: OwnershipClassification) -> Optional[str]:
    if classification.owner_type != OWNER_AGENCY:
        return None
    name_key = normalize_agency_name(classification.agency_name or listing.agency_name)
    if name_key:
        return name_key
    if listing.agency_id:
        return f"id:{listing.agency_id.strip()}"
    return None


def compute_multiagency(agency_identities: Iterable[str], owner_types: Iterable[str]) -> bool:
    """Two distinct agencies, or an agency and a private seller, on one address."""
    types = set(owner_types)
    if OWNER_AGENCY in types and OWNER_PRIVATE in types:
        return True
    return len({identity for identity in agency_identities if identity}) >= 2


def _timestamp_value(ts: Optional[datetime]) -> float:
    if ts is None:
        return float("-inf")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def _has_exclusivity_hint(listing: RawListing) -> bool:
    text = ascii_fold(" ".join(part for part in (listing.title, listing.description) if part))
    return any(keyword in text for keyword in EXCLUSIVITY_KEYWORDS)


def choose_address_listing(
    members: Sequence[Tuple[RawListing, OwnershipClassification]]
) -> Tuple[RawListing, OwnershipClassification]:
    """Prefer a structured, specific address, then the most confident classification."""

    def key(item: Tuple[RawListing, OwnershipClassification]):
        listing, classification = item
        normalized = normalize_address(listing.address, listing.city)
        return (
            is_generic_address(listing.address),
            not normalized.is_structured,
            listing.city is None,
            CONFIDENCE_RANK.get(classification.confidence, len(CONFIDENCE_RANK)),
            -_timestamp_value(listing.observed_at),
            listing.ref,
        )

    return min(members, key=key)


def choose_representative(
    members: Sequence[Tuple[RawListing, OwnershipClassification]]
) -> Tuple[RawListing, OwnershipClassification]:
    """Most recently observed listing; ties go to the most confident classification."""

    def key(item: Tuple[RawListing, OwnershipClassification]):
        listing, classification = item
        return (
            -_timestamp_value(listing.observed_at),
            CONFIDENCE_RANK.get(classification.confidence, len(CONFIDENCE_RANK)),
            listing.ref,
        )

    return min(members, key=key)


def _first_present(values: Iterable[Optional[float]]) -> Optional[float]:
    for value in values:
        if value is not None:
            return value
    return None


def _merge_agency_names(existing: Sequence[str], new: Sequence[str]) -> List[str]:
    names: Dict[str, str] = {}
    for name in list(existing) + list(new):
        key = normalize_agency_name(name)
        if key and key not in names:
            names[key] = name.strip()
    return sorted(names.values(), key=lambda value: normalize_agency_name(value))


def _later_stage(current: str, derived: str) -> str:
    def rank(stage: str) -> int:
        return STAGES.index(stage) if stage in STAGES else 0

    return current if rank(current) >= rank(derived) else derived


def aggregate_cluster(
    cluster: PropertyCluster,
    classifications: Sequence[OwnershipClassification],
    existing: Optional[SharedProperty] = None,
    now: Optional[datetime] = None,
) -> SharedProperty:
    """Build the canonical record for a cluster, merging into ``existing`` when given."""
    if len(classifications) != len(cluster.listings):
        raise ValueError("Every cluster member needs a classification")
    now = now or datetime.now(timezone.utc)
    members = list(zip(cluster.listings, classifications))

    address_listing, _ = choose_address_listing(members)
    representative, _ = choose_representative(members)
    by_recency = [item[0] for item in sorted(members, key=lambda item: -_timestamp_value(item[0].observed_at))]

    owner_types: Dict[str, str] = {listing.ref: result.owner_type for listing, result in members}
    urls: Dict[str, str] = {listing.ref: listing.url for listing, _ in members if listing.url}
    agency_names = [
        (result.agency_name or listing.agency_name or "").strip()
        for listing, result in members
        if result.owner_type == OWNER_AGENCY and (result.agency_name or listing.agency_name)
    ]
    identities: Set[str] = {
        identity for identity in (agency_identity(listing, result) for listing, result in members) if identity
    }

    exclusivity = len(members) == 1 and _has_exclusivity_hint(members[0][0])
    derived_stage = "owner_found" if OWNER_PRIVATE in owner_types.values() else "address_found"

    if existing is not None:
        merged_types = dict(existing.listing_owner_types)
        merged_types.update(owner_types)
        owner_types = merged_types
        urls = {**existing.listing_urls, **urls}
        agency_names = _merge_agency_names(existing.agency_names, agency_names)
        identities |= {normalize_agency_name(name) for name in agency_names}
    else:
        agency_names = _merge_agency_names([], agency_names)

    is_multiagency = compute_multiagency(identities, owner_types.values())

    return SharedProperty(
        address=existing.address if existing is not None else address_listing.address,
        city=(existing.city if existing is not None and existing.city else address_listing.city),
        identity_key=existing.identity_key if existing is not None else identity_key(address_listing.address, address_listing.city),
        price=representative.price if representative.price is not None else _first_present(l.price for l in by_recency),
        size=representative.size if representative.size is not None else _first_present(l.size for l in by_recency),
        bedrooms=representative.bedrooms
        if representative.bedrooms is not None
        else _first_present(l.bedrooms for l in by_recency),
        listing_refs=sorted(owner_types),
        listing_owner_types=owner_types,
        listing_urls=urls,
        agency_names=agency_names,
        is_multiagency=is_multiagency,
        location=existing.location if existing is not None else None,
        stage=_later_stage(existing.stage, derived_stage) if existing is not None else derived_stage,
        interested_buyers_count=existing.interested_buyers_count if existing is not None else 0,
        exclusivity_hint=exclusivity and not is_multiagency,
        created_at=existing.created_at if existing is not None and existing.created_at else now,
        updated_at=now,
        id=existing.id if existing is not None else None,
    )


def _descriptive_state(record: SharedProperty) -> Dict[str, object]:
    state = asdict(record)
    for volatile in ("updated_at", "created_at", "location", "id"):
        state.pop(volatile, None)
    return state


def _cluster_is_addressable(cluster: PropertyCluster) -> bool:
    return any(listing.address and not is_generic_address(listing.address) for listing in cluster.listings)


def run_scan(
    listings: Sequence[RawListing],
    store: PropertyStore,
    thresholds: Optional[MatchThresholds] = None,
    buyer_interest: Optional[Mapping[str, int]] = None,
) -> ScanRunStats:
    """Run one dedup scan over the listing stream and upsert canonical records.

    ``buyer_interest`` maps identity keys to interested buyer counts computed
    by downstream matching; when given, the counts are refreshed on the
    records touched by this scan.
    """
    if not _SCAN_LOCK.acquire(blocking=False):
        raise ScanInProgressError("A scan is already running")
    try:
        return _run_scan(listings, store, thresholds or MatchThresholds(), buyer_interest or {})
    finally:
        _SCAN_LOCK.release()


def _run_scan(
    listings: Sequence[RawListing],
    store: PropertyStore,
    thresholds: MatchThresholds,
    buyer_interest: Mapping[str, int],
) -> ScanRunStats:
    started = time.monotonic()
    now = datetime.now(timezone.utc)
    stats = ScanRunStats(total_listings=len(listings), started_at=now)
    logger.info("Starting scan over %s listings.", len(listings))
    if not listings:
        logger.warning("Scan received no listings; nothing to do.")

    prepared = [PreparedListing.build(listing) for listing in listings]
    clustering = cluster_listings(listings, thresholds, prepared=prepared)
    classifications: List[OwnershipClassification] = [classify_listing(listing) for listing in listings]
    stats.clusters_found = len(clustering.clusters)
    stats.rule_merges = dict(clustering.rule_merges)

    for cluster in clustering.clusters:
        if not _cluster_is_addressable(cluster):
            stats.clusters_skipped += 1
            logger.debug("Skipping cluster %s: no usable address.", cluster.indices)
            continue
        member_classes = [classifications[idx] for idx in cluster.indices]
        draft = aggregate_cluster(cluster, member_classes, now=now)
        # A changed best address must not fork the record its listings already belong to.
        existing = store.find_by_identity(draft.identity_key) or store.find_by_listing_refs(draft.listing_refs)
        record = aggregate_cluster(cluster, member_classes, existing=existing, now=now) if existing else draft
        if record.identity_key in buyer_interest:
            record.interested_buyers_count = int(buyer_interest[record.identity_key])

        if existing is None:
            store.upsert(record)
            stats.properties_created += 1
            logger.debug("Created canonical property for %s (%s listings).", record.address, cluster.size)
        elif _descriptive_state(existing) != _descriptive_state(record):
            store.upsert(record)
            stats.properties_updated += 1
            logger.debug("Updated canonical property %s for %s.", existing.id, record.address)
        else:
            stats.properties_unchanged += 1

        if record.is_multiagency:
            stats.multiagency_count += 1
        if record.exclusivity_hint:
            stats.exclusive_count += 1

    stats.duration_seconds = round(time.monotonic() - started, 3)
    logger.info(
        "Scan finished in %.2fs: %s clusters, %s multi-agency, %s exclusive, %s created, %s updated, %s skipped.",
        stats.duration_seconds,
        stats.clusters_found,
        stats.multiagency_count,
        stats.exclusive_count,
        stats.properties_created,
        stats.properties_updated,
        stats.clusters_skipped,
    )
    return stats


def rank_shared_properties(records: Iterable[SharedProperty]) -> List[SharedProperty]:
    """Order canonical records for downstream matching: buyer interest first."""
    return sorted(
        records,
        key=lambda record: (
            -int(record.interested_buyers_count or 0),
            not record.is_multiagency,
            -_timestamp_value(record.updated_at),
            record.id if record.id is not None else 0,
        ),
    )
