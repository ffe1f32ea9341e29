"""Deterministic clustering of listings that describe the same property."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from listing_schema import RawListing
from pipelines.normalizer import city_key
from pipelines.similarity import MatchThresholds, PreparedListing, SimilarityResult, score_pair


logger = logging.getLogger(__name__)

# Each bucket is paired with itself and its upper neighbour so pairs straddling an edge survive.
_BUCKET_OFFSETS = (0, 1)


class UnionFind:
    """Disjoint-set data structure with path compression."""

    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        """Return canonical parent."""
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, x: int, y: int) -> bool:
        """Union sets containing x and y. Return True if merged."""
        root_x = self.find(x)
        root_y = self.find(y)
        if root_x == root_y:
            return False

        rank_x = self.rank[root_x]
        rank_y = self.rank[root_y]

        if rank_x < rank_y:
            self.parent[root_x] = root_y
        elif rank_x > rank_y:
            self.parent[root_y] = root_x
        else:
            self.parent[root_y] = root_x
            self.rank[root_x] += 1
        return True

    def groups(self) -> Dict[int, List[int]]:
        """Return mapping from root -> list of indices."""
        clusters: Dict[int, List[int]] = defaultdict(list)
        for idx in range(len(self.parent)):
            clusters[self.find(idx)].append(idx)
        return clusters


@dataclass
class PropertyCluster:
    indices: List[int]
    listings: List[RawListing]
    pair_scores: Dict[Tuple[int, int], SimilarityResult] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.indices)

    @property
    def match_score(self) -> float:
        if not self.pair_scores:
            return 0.0
        return sum(result.score for result in self.pair_scores.values()) / len(self.pair_scores)


@dataclass
class ClusteringResult:
    clusters: List[PropertyCluster]
    rule_merges: Dict[str, int]
    pairs_compared: int


def size_bucket(size: Optional[float], width: float) -> Optional[int]:
    if size is None or (isinstance(size, float) and math.isnan(size)) or size <= 0 or width <= 0:
        return None
    return int(size // width)


def price_bucket(price: Optional[float], tolerance: float) -> Optional[int]:
    """Log-scale bucket so every bucket spans roughly one price tolerance."""
    if price is None or (isinstance(price, float) and math.isnan(price)) or price <= 0 or tolerance <= 0:
        return None
    return int(math.floor(math.log(price) / math.log1p(tolerance)))


def build_buckets(
    prepared: Sequence[PreparedListing], thresholds: MatchThresholds
) -> Tuple[Dict[Tuple[str, int], List[int]], Dict[Tuple[str, int], List[int]]]:
    """Return (city, size bucket) and (city, price bucket) -> listing indices."""
    by_size: Dict[Tuple[str, int], List[int]] = defaultdict(list)
    by_price: Dict[Tuple[str, int], List[int]] = defaultdict(list)
    # Two prices within the widest band are at most one bucket apart.
    widest_price_band = 2 * max(thresholds.price_tolerance_small, thresholds.price_tolerance_large)
    for idx, item in enumerate(prepared):
        town = city_key(item.listing.city)
        s_bucket = size_bucket(item.listing.size, thresholds.size_tolerance_m2)
        if s_bucket is not None:
            by_size[(town, s_bucket)].append(idx)
        p_bucket = price_bucket(item.listing.price, widest_price_band)
        if p_bucket is not None:
            by_price[(town, p_bucket)].append(idx)
    return by_size, by_price


def hash_chunks(token: str, threshold: int) -> List[Tuple[int, int, str]]:
    """Split a fingerprint into threshold + 1 contiguous pieces keyed by length and position.

    Two equal-length fingerprints within ``threshold`` differing bits (or
    characters) share at least one identical piece at the same position.
    """
    parts = min(len(token), max(1, threshold + 1))
    step, extra = divmod(len(token), parts)
    chunks: List[Tuple[int, int, str]] = []
    start = 0
    for number in range(parts):
        end = start + step + (1 if number < extra else 0)
        chunks.append((len(token), number, token[start:end]))
        start = end
    return chunks


def build_image_index(prepared: Sequence[PreparedListing], threshold: int = 0) -> Dict[Tuple[int, int, str], List[int]]:
    """Build inverted index fingerprint chunk -> listing indices."""
    index: Dict[Tuple[int, int, str], List[int]] = defaultdict(list)
    for idx, item in enumerate(prepared):
        keys = {chunk for token in item.listing.image_hashes if token for chunk in hash_chunks(token, threshold)}
        for key in sorted(keys):
            index[key].append(idx)
    return index


def candidate_pairs(prepared: Sequence[PreparedListing], thresholds: MatchThresholds) -> Set[Tuple[int, int]]:
    """Return the (i, j) pairs, i < j, worth scoring."""
    pairs: Set[Tuple[int, int]] = set()
    by_size, by_price = build_buckets(prepared, thresholds)
    for buckets in (by_size, by_price):
        for (town, bucket), members in buckets.items():
            for offset in _BUCKET_OFFSETS:
                others = members if offset == 0 else buckets.get((town, bucket + offset), [])
                for idx in members:
                    for other in others:
                        if idx == other:
                            continue
                        pairs.add((min(idx, other), max(idx, other)))
    for members in build_image_index(prepared, thresholds.image_hamming_threshold).values():
        for pos, idx in enumerate(members):
            for other in members[pos + 1:]:
                pairs.add((min(idx, other), max(idx, other)))
    return pairs


def _merge_rule(result: SimilarityResult) -> str:
    if result.address_match and (result.price_ok or result.size_ok):
        return "address"
    return "image"


def cluster_listings(
    listings: Sequence[RawListing],
    thresholds: Optional[MatchThresholds] = None,
    prepared: Optional[Sequence[PreparedListing]] = None,
) -> ClusteringResult:
    """Partition listings into clusters over the linkable relation.

    Candidate pairs are bounded by city/size and city/price buckets plus a
    fingerprint chunk index, scored once, and merged with union-find. The
    partition does not depend on input order; clusters come back ordered by
    their smallest member index.
    """
    thresholds = thresholds or MatchThresholds()
    prepared = list(prepared) if prepared is not None else [PreparedListing.build(item) for item in listings]
    uf = UnionFind(len(prepared))
    merge_counts = {"address": 0, "image": 0}
    linked: Dict[Tuple[int, int], SimilarityResult] = {}

    pairs = sorted(candidate_pairs(prepared, thresholds))
    for idx, other in pairs:
        result = score_pair(prepared[idx], prepared[other], thresholds)
        if not result.linkable:
            continue
        linked[(idx, other)] = result
        logger.debug("Linked %s <-> %s (score %.2f): %s", idx, other, result.score, "; ".join(result.reasons))
        if uf.union(idx, other):
            merge_counts[_merge_rule(result)] += 1

    groups = sorted((sorted(members) for members in uf.groups().values()), key=lambda members: members[0])
    clusters: List[PropertyCluster] = []
    for members in groups:
        member_set = set(members)
        clusters.append(
            PropertyCluster(
                indices=members,
                listings=[prepared[idx].listing for idx in members],
                pair_scores={pair: res for pair, res in linked.items() if pair[0] in member_set},
            )
        )

    logger.info(
        "Formed %s clusters from %s listings (%s candidate pairs). Rule merges: %s",
        len(clusters),
        len(prepared),
        len(pairs),
        merge_counts,
    )
    return ClusteringResult(clusters=clusters, rule_merges=merge_counts, pairs_compared=len(pairs))
