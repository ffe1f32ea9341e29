"""Pairwise similarity between normalized listings."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rapidfuzz import fuzz

from listing_schema import NormalizedAddress, RawListing
from pipelines.normalizer import is_generic_address, normalize_address


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchThresholds:
    address_threshold: float = 0.75
    price_tolerance_small: float = 0.05
    price_tolerance_large: float = 0.10
    price_band_low: float = 150_000.0
    price_band_high: float = 1_000_000.0
    size_tolerance_m2: float = 10.0
    size_strict_m2: float = 5.0
    image_hamming_threshold: int = 5
    image_match_score: float = 0.9
    address_weight: float = 0.5
    price_weight: float = 0.25
    size_weight: float = 0.25

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "MatchThresholds":
        if not config:
            return cls()
        known = {f.name: f.type for f in fields(cls)}
        values = {}
        for key, value in config.items():
            if key not in known or value is None:
                continue
            values[key] = int(value) if key == "image_hamming_threshold" else float(value)
        return cls(**values)

    def price_tolerance(self, reference_price: float) -> float:
        """Relative price band, tighter for cheap properties and looser for expensive ones."""
        if reference_price <= self.price_band_low:
            return self.price_tolerance_small
        if reference_price >= self.price_band_high:
            return self.price_tolerance_large
        span = self.price_band_high - self.price_band_low
        ratio = (reference_price - self.price_band_low) / span
        return self.price_tolerance_small + ratio * (self.price_tolerance_large - self.price_tolerance_small)


@dataclass(frozen=True)
class PreparedListing:
    """A listing paired with its normalized address."""

    listing: RawListing
    address: NormalizedAddress
    usable_address: bool

    @classmethod
    def build(cls, listing: RawListing) -> "PreparedListing":
        normalized = normalize_address(listing.address, listing.city)
        return cls(
            listing=listing,
            address=normalized,
            usable_address=not is_generic_address(listing.address) and normalized.is_structured,
        )


@dataclass(frozen=True)
class SimilarityResult:
    score: float
    address_similarity: float
    address_match: bool
    price_ok: bool
    size_ok: bool
    image_match: bool
    linkable: bool
    matched: Tuple[str, ...] = ()
    unmatched: Tuple[str, ...] = ()
    reasons: Tuple[str, ...] = field(default=(), compare=False)


def _valid_number(value: Optional[float]) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value)) and value > 0


def address_similarity(a: NormalizedAddress, b: NormalizedAddress) -> float:
    """Token-sort similarity of the street + number keys, in [0, 1]."""
    if not a.key or not b.key:
        return 0.0
    return round(fuzz.token_sort_ratio(a.key, b.key) / 100.0, 4)


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Bit distance for equal-length hex hashes, character distance otherwise."""
    if len(hash_a) == len(hash_b):
        try:
            return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")
        except ValueError:
            pass
        return sum(1 for ch_a, ch_b in zip(hash_a, hash_b) if ch_a != ch_b)
    shorter, longer = sorted((hash_a, hash_b), key=len)
    return sum(1 for ch_a, ch_b in zip(shorter, longer) if ch_a != ch_b) + (len(longer) - len(shorter))


def images_match(hashes_a: Iterable[str], hashes_b: Iterable[str], threshold: int) -> Optional[int]:
    """Return the smallest distance between two hash sets when it is within threshold."""
    best: Optional[int] = None
    list_b = [h for h in hashes_b if h]
    for hash_a in hashes_a:
        if not hash_a:
            continue
        for hash_b in list_b:
            distance = 0 if hash_a == hash_b else hamming_distance(hash_a, hash_b)
            if distance <= threshold and (best is None or distance < best):
                best = distance
    return best


def _price_component(a: Optional[float], b: Optional[float], thresholds: MatchThresholds) -> Tuple[Optional[bool], float, str]:
    if not (_valid_number(a) and _valid_number(b)):
        return None, 0.0, ""
    mean = (a + b) / 2
    diff = abs(a - b) / mean
    tolerance = thresholds.price_tolerance(mean)
    if diff <= tolerance:
        return True, 1.0 - (diff / tolerance) * 0.5 if tolerance else 1.0, f"price diff {diff * 100:.1f}%"
    return False, 0.0, f"price diff {diff * 100:.1f}% over {tolerance * 100:.1f}%"


def _size_component(a: Optional[float], b: Optional[float], thresholds: MatchThresholds) -> Tuple[Optional[bool], float, str]:
    if not (_valid_number(a) and _valid_number(b)):
        return None, 0.0, ""
    diff = abs(a - b)
    if diff <= thresholds.size_strict_m2:
        return True, 1.0, f"size diff {diff:g} m2"
    if diff <= thresholds.size_tolerance_m2:
        return True, 0.75, f"size diff {diff:g} m2"
    return False, 0.0, f"size diff {diff:g} m2 over {thresholds.size_tolerance_m2:g} m2"


def score_pair(a: PreparedListing, b: PreparedListing, thresholds: Optional[MatchThresholds] = None) -> SimilarityResult:
    """Score two prepared listings.

    The pair is linkable when the address gate clears and at least one of the
    price/size bands holds, or when an image fingerprint matches regardless of
    price and size.
    """
    thresholds = thresholds or MatchThresholds()
    matched: List[str] = []
    unmatched: List[str] = []
    reasons: List[str] = []

    addr_sim = 0.0
    address_match = False
    if a.usable_address and b.usable_address:
        addr_sim = address_similarity(a.address, b.address)
        numbers_differ = (
            a.address.house_number is not None
            and b.address.house_number is not None
            and a.address.house_number != b.address.house_number
        )
        if numbers_differ:
            reasons.append(f"house number {a.address.house_number} != {b.address.house_number}")
        elif addr_sim >= thresholds.address_threshold:
            address_match = True
        reasons.append(f"address similarity {addr_sim * 100:.0f}%")
    else:
        reasons.append("generic or missing address")
    (matched if address_match else unmatched).append("address")

    price_ok, price_score, price_reason = _price_component(a.listing.price, b.listing.price, thresholds)
    size_ok, size_score, size_reason = _size_component(a.listing.size, b.listing.size, thresholds)
    for name, ok, reason in (("price", price_ok, price_reason), ("size", size_ok, size_reason)):
        if ok is None:
            unmatched.append(name)
            continue
        (matched if ok else unmatched).append(name)
        reasons.append(reason)

    distance = images_match(a.listing.image_hashes, b.listing.image_hashes, thresholds.image_hamming_threshold)
    image_match = distance is not None
    if image_match:
        matched.append("image")
        reasons.append(f"image fingerprint distance {distance}")
    elif a.listing.image_hashes and b.listing.image_hashes:
        unmatched.append("image")

    score = (
        thresholds.address_weight * (addr_sim if address_match else 0.0)
        + thresholds.price_weight * price_score
        + thresholds.size_weight * size_score
    )
    if image_match:
        score = max(score, thresholds.image_match_score)
    score = round(min(1.0, max(0.0, score)), 4)

    linkable = (address_match and bool(price_ok or size_ok)) or image_match
    return SimilarityResult(
        score=score,
        address_similarity=addr_sim,
        address_match=address_match,
        price_ok=bool(price_ok),
        size_ok=bool(size_ok),
        image_match=image_match,
        linkable=linkable,
        matched=tuple(sorted(matched)),
        unmatched=tuple(sorted(unmatched)),
        reasons=tuple(reasons),
    )


def score_listings(a: RawListing, b: RawListing, thresholds: Optional[MatchThresholds] = None) -> SimilarityResult:
    return score_pair(PreparedListing.build(a), PreparedListing.build(b), thresholds)
