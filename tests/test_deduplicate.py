import random

from pipelines.deduplicate import (
    UnionFind,
    candidate_pairs,
    cluster_listings,
    hash_chunks,
    price_bucket,
    size_bucket,
)
from pipelines.similarity import MatchThresholds, PreparedListing


def _listings(make_listing):
    return [
        make_listing(address="Via Roma 10", price=300000, size=80),
        make_listing(address="Via Roma 10", price=305000, size=82),
        make_listing(address="via roma, 10", price=298000, size=79),
        make_listing(address="Via Roma 12", price=300000, size=80),
        make_listing(address="Via Verdi 3", city="Torino", price=180000, size=60),
        make_listing(address="Milano", price=450000, size=120, image_hashes=["aa55aa55aa55aa55"]),
        make_listing(address="Corso Como 2", price=900000, size=150, image_hashes=["aa55aa55aa55aa55"]),
        make_listing(address="Via Roma 10", city="Bergamo", price=300000, size=80),
    ]


def _partition(result):
    return {frozenset(listing.ref for listing in cluster.listings) for cluster in result.clusters}


def test_union_find_groups():
    uf = UnionFind(5)
    assert uf.union(0, 1)
    assert uf.union(3, 4)
    assert not uf.union(1, 0)
    assert uf.find(1) == uf.find(0)
    assert sorted(sorted(group) for group in uf.groups().values()) == [[0, 1], [2], [3, 4]]


def test_every_listing_lands_in_exactly_one_cluster(make_listing):
    listings = _listings(make_listing)
    result = cluster_listings(listings)
    seen = [idx for cluster in result.clusters for idx in cluster.indices]
    assert sorted(seen) == list(range(len(listings)))


def test_expected_clusters(make_listing):
    listings = _listings(make_listing)
    result = cluster_listings(listings)
    groups = sorted(cluster.indices for cluster in result.clusters)
    assert groups == [[0, 1, 2], [3], [4], [5, 6], [7]]
    assert result.rule_merges == {"address": 2, "image": 1}


def test_partition_does_not_depend_on_input_order(make_listing):
    listings = _listings(make_listing)
    expected = _partition(cluster_listings(listings))
    shuffled = list(listings)
    random.Random(7).shuffle(shuffled)
    assert _partition(cluster_listings(shuffled)) == expected


def test_neighbouring_buckets_are_compared(make_listing):
    listings = [
        make_listing(address="Via Roma 10", size=79.5),
        make_listing(address="Via Roma 10", size=80.5),
    ]
    prepared = [PreparedListing.build(item) for item in listings]
    assert size_bucket(79.5, 10) != size_bucket(80.5, 10)
    assert (0, 1) in candidate_pairs(prepared, MatchThresholds())
    assert len(cluster_listings(listings).clusters) == 1


def test_near_duplicate_fingerprints_link_outside_shared_buckets(make_listing):
    listings = [
        make_listing(price=300000, size=80, image_hashes=["ffff0000ffff0000"]),
        make_listing(price=420000, size=110, image_hashes=["ffff0000ffff0001"]),
        make_listing(address="Via Verdi 3", city="Torino", price=90000, size=40, image_hashes=["7fff0000ffff0003"]),
    ]
    result = cluster_listings(listings)
    assert [cluster.indices for cluster in result.clusters] == [[0, 1, 2]]
    assert result.rule_merges["image"] == 2


def test_hash_chunks_cover_every_position():
    chunks = hash_chunks("ffff0000ffff0000", 5)
    assert len(chunks) == 6
    assert "".join(piece for _, _, piece in chunks) == "ffff0000ffff0000"
    assert {length for length, _, _ in chunks} == {16}
    assert hash_chunks("ab", 5) == [(2, 0, "a"), (2, 1, "b")]


def test_bucket_helpers_ignore_missing_values():
    assert size_bucket(None, 10) is None
    assert size_bucket(0, 10) is None
    assert price_bucket(float("nan"), 0.2) is None
    assert price_bucket(300000, 0.2) == price_bucket(300001, 0.2)


def test_empty_input():
    result = cluster_listings([])
    assert result.clusters == []
    assert result.pairs_compared == 0
