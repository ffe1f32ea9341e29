"""
Owner classification for listings (private seller vs agency).

Each listing source exposes a different subset of signals: some portals
carry an explicit advertiser label, others only agency identifiers, manual
entries often nothing but free text.  The classifier is an ordered chain of
independent rules; the first rule that returns a classification wins and its
name and reasoning are kept on the result so the decision can be audited.
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from listing_schema import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    OWNER_AGENCY,
    OWNER_PRIVATE,
    OwnershipClassification,
    RawListing,
)


logger = logging.getLogger(__name__)

PRIVATE_LABELS = {"privato", "privata", "private", "owner", "proprietario", "proprietaria", "particolare"}
AGENCY_LABELS = {"agenzia", "agency", "agenzia immobiliare", "professionista", "professional", "agent"}

# Keyword families: matches inside one family count once.
PRIVATE_KEYWORD_FAMILIES: Dict[str, Tuple[str, ...]] = {
    "no_agencies": ("no agenzie", "no agenzia", "senza agenzie", "no agencies", "no agents", "astenersi agenzie"),
    "direct_sale": ("vendita diretta", "vendita privata", "private sale", "direct sale"),
    "owner_sells": ("privato vende", "proprietario vende", "particolare vende", "owner sells", "sold by owner"),
    "private_stem": ("privat", "particolare"),
    "owner_stem": ("proprietari", "owner"),
}

AGENCY_KEYWORD_FAMILIES: Dict[str, Tuple[str, ...]] = {
    "agency": ("agenzia", "agency"),
    "real_estate": ("immobiliare", "real estate", "realty"),
    "group": ("gruppo", "group"),
    "consulting": ("consulenza", "consulting"),
    "services": ("services", "servizi"),
    "agency_phrasing": ("proponiamo", "disponiamo", "propone", "proposta"),
}

# A description at least this long reads as an agency-written listing.
DETAILED_DESCRIPTION_CHARS = 300

_PRIVATE_NAME_PLACEHOLDERS = ("privato", "private", "proprietario", "owner", "particolare")


@dataclass(frozen=True)
class OwnerSignals:
    advertiser: Optional[str] = None
    contact_type: Optional[str] = None
    agency_id: Optional[str] = None
    agency_name: Optional[str] = None
    title: str = ""
    description: str = ""
    contact: str = ""

    @classmethod
    def from_listing(cls, listing: RawListing) -> "OwnerSignals":
        return cls(
            advertiser=listing.advertiser,
            contact_type=listing.contact_type,
            agency_id=listing.agency_id,
            agency_name=listing.agency_name,
            title=listing.title or "",
            description=listing.description or "",
            contact=listing.contact or "",
        )

    @property
    def text(self) -> str:
        return _fold(" ".join(part for part in (self.description, self.title, self.contact) if part))

    @property
    def has_agency_id(self) -> bool:
        return bool((self.agency_id or "").strip())

    @property
    def clean_agency_name(self) -> Optional[str]:
        name = (self.agency_name or "").strip()
        return name if looks_like_agency_name(name) else None


Rule = Callable[[OwnerSignals], Optional[OwnershipClassification]]


def _fold(value: Optional[str]) -> str:
    normalized = unicodedata.normalize("NFKD", value or "")
    return " ".join("".join(ch for ch in normalized if not unicodedata.combining(ch)).lower().split())


def looks_like_agency_name(name: Optional[str]) -> bool:
    """Return False for empty names and private-seller placeholders."""
    folded = _fold(name)
    if len(folded) < 2:
        return False
    for placeholder in _PRIVATE_NAME_PLACEHOLDERS:
        if folded == placeholder or folded.startswith(placeholder + " "):
            return False
    return True


def matched_families(text: str, families: Dict[str, Tuple[str, ...]]) -> List[str]:
    """Return the names of keyword families present in text, in declaration order."""
    return [name for name, keywords in families.items() if any(keyword in text for keyword in keywords)]


def _result(owner_type: str, confidence: str, reasoning: str, rule: str, agency_name: Optional[str] = None):
    return OwnershipClassification(
        owner_type=owner_type,
        agency_name=agency_name if owner_type == OWNER_AGENCY else None,
        confidence=confidence,
        reasoning=reasoning,
        rule=rule,
    )


def advertiser_private_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    label = _fold(signals.advertiser)
    if label in PRIVATE_LABELS:
        return _result(OWNER_PRIVATE, CONFIDENCE_HIGH, f'advertiser label "{label}"', "advertiser_private")
    return None


def advertiser_agency_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    label = _fold(signals.advertiser)
    if label in AGENCY_LABELS:
        return _result(
            OWNER_AGENCY,
            CONFIDENCE_HIGH,
            f'advertiser label "{label}"',
            "advertiser_agency",
            agency_name=signals.clean_agency_name,
        )
    return None


def contact_type_private_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    contact_type = _fold(signals.contact_type)
    if contact_type in PRIVATE_LABELS:
        return _result(OWNER_PRIVATE, CONFIDENCE_HIGH, f'contact type "{contact_type}"', "contact_type_private")
    return None


def agency_identity_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    name = signals.clean_agency_name
    if signals.has_agency_id and name:
        return _result(
            OWNER_AGENCY,
            CONFIDENCE_HIGH,
            f'agency id {signals.agency_id} and agency name "{name}"',
            "agency_identity",
            agency_name=name,
        )
    return None


def private_keywords_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    families = matched_families(signals.text, PRIVATE_KEYWORD_FAMILIES)
    if not families:
        return None
    confidence = CONFIDENCE_HIGH if len(families) >= 2 else CONFIDENCE_MEDIUM
    return _result(OWNER_PRIVATE, confidence, f"private keywords: {', '.join(families)}", "private_keywords")


def agency_keywords_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    families = matched_families(signals.text, AGENCY_KEYWORD_FAMILIES)
    if not families:
        return None
    name = signals.clean_agency_name
    if len(families) >= 2:
        return _result(
            OWNER_AGENCY, CONFIDENCE_HIGH, f"agency keywords: {', '.join(families)}", "agency_keywords", name
        )
    if signals.has_agency_id:
        return _result(
            OWNER_AGENCY,
            CONFIDENCE_MEDIUM,
            f"agency keyword {families[0]} with agency id {signals.agency_id}",
            "agency_keywords",
            name,
        )
    if len(signals.description.strip()) >= DETAILED_DESCRIPTION_CHARS:
        return _result(
            OWNER_AGENCY,
            CONFIDENCE_MEDIUM,
            f"agency keyword {families[0]} in a detailed description",
            "agency_keywords",
            name,
        )
    return None


def agency_presence_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    name = signals.clean_agency_name
    if signals.has_agency_id or name:
        return _result(OWNER_AGENCY, CONFIDENCE_LOW, "agency identifiers present (fallback)", "agency_presence", name)
    return None


def default_private_rule(signals: OwnerSignals) -> Optional[OwnershipClassification]:
    return _result(OWNER_PRIVATE, CONFIDENCE_LOW, "no agency signal found (default to private)", "default_private")


OWNER_RULES: Tuple[Rule, ...] = (
    advertiser_private_rule,
    advertiser_agency_rule,
    contact_type_private_rule,
    agency_identity_rule,
    private_keywords_rule,
    agency_keywords_rule,
    agency_presence_rule,
    default_private_rule,
)


def classify_owner(signals: OwnerSignals, rules: Sequence[Rule] = OWNER_RULES) -> OwnershipClassification:
    """Run the rule chain and return the first classification produced."""
    for rule in rules:
        result = rule(signals)
        if result is not None:
            logger.debug("Owner rule %s fired: %s (%s)", result.rule, result.owner_type, result.confidence)
            return result
    return default_private_rule(signals)


def classify_listing(listing: RawListing, rules: Sequence[Rule] = OWNER_RULES) -> OwnershipClassification:
    return classify_owner(OwnerSignals.from_listing(listing), rules)
