from datetime import datetime, timedelta, timezone

import pytest

from listing_schema import GeoLocation, SharedProperty
from pipelines import aggregate
from pipelines.aggregate import (
    ScanInProgressError,
    aggregate_cluster,
    compute_multiagency,
    normalize_agency_name,
    rank_shared_properties,
    run_scan,
)
from pipelines.deduplicate import cluster_listings
from pipelines.owner_classifier import classify_listing
from pipelines.store import InMemoryPropertyStore


def test_scenario_a_creates_one_multiagency_property(scenario_a):
    store = InMemoryPropertyStore()
    stats = run_scan(scenario_a, store)

    assert stats.total_listings == 2
    assert stats.clusters_found == 1
    assert stats.properties_created == 1
    assert stats.multiagency_count == 1
    [record] = store.all()
    assert record.is_multiagency
    assert record.agency_names == ["Agenzia Sole"]
    assert record.listing_refs == ["idealista:b2", "immobiliare:a1"]
    assert record.owner_type_summary == {"private": 1, "agency": 1}
    assert record.stage == "owner_found"


def test_repeated_scan_is_idempotent(scenario_a):
    store = InMemoryPropertyStore()
    run_scan(scenario_a, store)
    first = store.all()

    stats = run_scan(scenario_a, store)
    assert stats.properties_created == 0
    assert stats.properties_updated == 0
    assert stats.properties_unchanged == 1
    second = store.all()
    assert len(second) == 1
    assert second[0].id == first[0].id
    assert second[0].is_multiagency == first[0].is_multiagency


def test_scan_never_clears_location(scenario_a, make_listing):
    store = InMemoryPropertyStore()
    run_scan(scenario_a, store)
    [record] = store.all()
    assert store.set_location(record.id, GeoLocation(45.46, 9.19))

    newer = make_listing(
        source="casa",
        external_id="c3",
        price=310000,
        size=81,
        advertiser="agenzia",
        agency_name="Casa Blu",
        observed_at=datetime.now(timezone.utc),
    )
    stats = run_scan(scenario_a + [newer], store)
    assert stats.properties_updated == 1
    [updated] = store.all()
    assert updated.location == GeoLocation(45.46, 9.19)
    assert updated.price == 310000
    assert updated.agency_names == ["Agenzia Sole", "Casa Blu"]
    assert len(updated.listing_refs) == 3


def test_generic_address_clusters_are_skipped(make_listing):
    store = InMemoryPropertyStore()
    stats = run_scan([make_listing(address="Milano", price=200000)], store)
    assert stats.clusters_skipped == 1
    assert store.all() == []


def test_same_agency_spelled_twice_is_not_multiagency(make_listing):
    listings = [
        make_listing(price=300000, size=80, advertiser="agenzia", agency_name="Agenzia Sole"),
        make_listing(price=301000, size=80, advertiser="agenzia", agency_name="AGENZIA SOLE."),
    ]
    store = InMemoryPropertyStore()
    stats = run_scan(listings, store)
    [record] = store.all()
    assert not record.is_multiagency
    assert stats.multiagency_count == 0
    assert len(record.agency_names) == 1


def test_two_agencies_are_multiagency(make_listing):
    listings = [
        make_listing(price=300000, size=80, advertiser="agenzia", agency_name="Agenzia Sole"),
        make_listing(price=301000, size=80, agency_id="44", agency_name="Casa Blu"),
    ]
    store = InMemoryPropertyStore()
    run_scan(listings, store)
    [record] = store.all()
    assert record.is_multiagency
    assert record.stage == "address_found"


def test_exclusivity_hint_on_singletons(make_listing):
    store = InMemoryPropertyStore()
    stats = run_scan([make_listing(description="Trilocale in esclusività", price=250000)], store)
    assert stats.exclusive_count == 1
    assert store.all()[0].exclusivity_hint


def test_representative_is_most_recent_listing(make_listing):
    now = datetime.now(timezone.utc)
    listings = [
        make_listing(price=300000, size=80, observed_at=now - timedelta(days=3)),
        make_listing(price=295000, size=81, observed_at=now),
    ]
    cluster = cluster_listings(listings).clusters[0]
    record = aggregate_cluster(cluster, [classify_listing(item) for item in listings])
    assert record.price == 295000
    assert record.size == 81


def test_aggregate_cluster_preserves_existing_fields(scenario_a):
    cluster = cluster_listings(scenario_a).clusters[0]
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    existing = SharedProperty(
        address="Via Roma 10",
        city="Milano",
        identity_key="via roma 10|milano",
        listing_refs=["old:1"],
        listing_owner_types={"old:1": "agency"},
        agency_names=["Vecchia Agenzia"],
        location=GeoLocation(45.0, 9.0),
        stage="owner_contacted",
        interested_buyers_count=4,
        created_at=created,
        id=12,
    )
    record = aggregate_cluster(cluster, [classify_listing(item) for item in scenario_a], existing=existing)
    assert record.id == 12
    assert record.location == GeoLocation(45.0, 9.0)
    assert record.stage == "owner_contacted"
    assert record.interested_buyers_count == 4
    assert record.created_at == created
    assert "old:1" in record.listing_refs
    assert "Vecchia Agenzia" in record.agency_names


def test_aggregate_cluster_requires_aligned_classifications(scenario_a):
    cluster = cluster_listings(scenario_a).clusters[0]
    with pytest.raises(ValueError):
        aggregate_cluster(cluster, [])


def test_buyer_interest_is_applied(scenario_a):
    store = InMemoryPropertyStore()
    run_scan(scenario_a, store, buyer_interest={"via roma 10|milano": 3})
    assert store.all()[0].interested_buyers_count == 3


def test_concurrent_scan_is_rejected(scenario_a):
    assert aggregate._SCAN_LOCK.acquire(blocking=False)
    try:
        with pytest.raises(ScanInProgressError):
            run_scan(scenario_a, InMemoryPropertyStore())
    finally:
        aggregate._SCAN_LOCK.release()


def test_multiagency_rules():
    assert compute_multiagency(["a", "b"], ["agency", "agency"])
    assert compute_multiagency([], ["agency", "private"])
    assert not compute_multiagency(["a", "a"], ["agency", "agency"])
    assert not compute_multiagency([], ["private", "private"])
    assert normalize_agency_name("Agenzia Sòle s.r.l.") == "agenziasolesrl"


def test_rank_shared_properties():
    now = datetime.now(timezone.utc)
    records = [
        SharedProperty(address="A 1", city="Milano", identity_key="a", id=1, updated_at=now),
        SharedProperty(address="B 2", city="Milano", identity_key="b", id=2, is_multiagency=True, updated_at=now),
        SharedProperty(address="C 3", city="Milano", identity_key="c", id=3, interested_buyers_count=5),
    ]
    assert [record.id for record in rank_shared_properties(records)] == [3, 2, 1]


def test_changed_best_address_updates_the_same_record(make_listing):
    first = make_listing(source="casa", external_id="r1", price=300000, size=80)
    store = InMemoryPropertyStore()
    run_scan([first], store)
    [created] = store.all()

    relabelled = make_listing(
        source="immobiliare",
        external_id="r2",
        address="Viale Roma 10",
        price=302000,
        size=80,
        advertiser="agenzia",
        agency_id="77",
        agency_name="Casa Blu",
    )
    stats = run_scan([first, relabelled], store)

    assert stats.properties_created == 0
    assert stats.properties_updated == 1
    [record] = store.all()
    assert record.id == created.id
    assert record.identity_key == created.identity_key
    assert record.listing_refs == ["casa:r1", "immobiliare:r2"]


def test_listing_urls_are_kept_per_ref(make_listing):
    store = InMemoryPropertyStore()
    first = make_listing(source="casa", external_id="u1", price=300000, size=80, url="https://casa.example/u1")
    run_scan([first], store)
    second = make_listing(source="idealista", external_id="u2", price=301000, size=80, url="https://idealista.example/u2")
    run_scan([second], store)
    [record] = store.all()
    assert record.listing_urls == {
        "casa:u1": "https://casa.example/u1",
        "idealista:u2": "https://idealista.example/u2",
    }
