"""Address canonicalisation and listing input loading."""

from __future__ import annotations

import json
import logging
import math
import re
import unicodedata
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from listing_schema import COLUMN_ALIASES, LISTING_COLUMNS, NormalizedAddress, RawListing, sanitize_text


logger = logging.getLogger(__name__)

# Dotted abbreviations have to be expanded before punctuation is stripped.
_DOTTED_ABBREVIATIONS = [
    (re.compile(r"\bc\.\s*so\b"), "corso "),
    (re.compile(r"\bp\.\s*z?za\b"), "piazza "),
    (re.compile(r"\bp\.\s*le\b"), "piazzale "),
    (re.compile(r"\bv\.\s*le\b"), "viale "),
    (re.compile(r"\bl\.\s*go\b"), "largo "),
    (re.compile(r"\bv\.\s*lo\b"), "vicolo "),
    (re.compile(r"\bv\.(?=\s|[a-z])"), "via "),
]

STREET_ABBREVIATIONS = {
    "v": "via",
    "vle": "viale",
    "cso": "corso",
    "pza": "piazza",
    "pzza": "piazza",
    "ple": "piazzale",
    "lgo": "largo",
    "vlo": "vicolo",
    "st": "street",
    "str": "street",
    "ave": "avenue",
    "av": "avenue",
    "rd": "road",
    "blvd": "boulevard",
    "sq": "square",
    "ln": "lane",
    "dr": "drive",
}

# Tokens that only introduce a house number ("n. 10", "civico 10").
_NUMBER_MARKERS = {"n", "nr", "no", "num", "civ", "civico"}
_COUNTRY_TOKENS = {"italia", "italy"}
# Tokens allowed after a house number ("10 scala b", "10 interno 3").
_UNIT_MARKERS = {"scala", "sc", "interno", "int", "piano", "ter"}
_HOUSE_NUMBER_RE = re.compile(r"^\d+[a-z]?(?:/[a-z0-9]+)?$")

GENERIC_PLACES = {
    "milano",
    "roma",
    "torino",
    "firenze",
    "bologna",
    "napoli",
    "genova",
    "venezia",
    "italy",
    "italia",
}


def ascii_fold(value: Optional[str]) -> str:
    normalized = unicodedata.normalize("NFKD", value or "")
    return "".join(ch for ch in normalized if not unicodedata.combining(ch)).lower()


def clean_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())


def city_key(city: Optional[str]) -> str:
    """Return the bucketing key for a city name."""
    folded = ascii_fold(city or "")
    folded = re.sub(r"[^\w\s]", " ", folded)
    return clean_whitespace(folded)


def _tokens(text: str) -> List[str]:
    folded = ascii_fold(text)
    for pattern, replacement in _DOTTED_ABBREVIATIONS:
        folded = pattern.sub(replacement, folded)
    folded = re.sub(r"[^\w\s/]", " ", folded)
    folded = folded.replace("_", " ")
    return [STREET_ABBREVIATIONS.get(tok, tok) for tok in clean_whitespace(folded).split(" ") if tok]


def _strip_trailing_place(tokens: List[str], city_tokens: List[str]) -> List[str]:
    trimmed = list(tokens)
    changed = True
    while changed and trimmed:
        changed = False
        if trimmed[-1] in _COUNTRY_TOKENS:
            trimmed.pop()
            changed = True
            continue
        if city_tokens and len(trimmed) > len(city_tokens) and trimmed[-len(city_tokens):] == city_tokens:
            del trimmed[-len(city_tokens):]
            changed = True
            continue
        # Postal codes (5 digits) trail the street in Italian addresses.
        if len(trimmed) > 2 and re.fullmatch(r"\d{5}", trimmed[-1]):
            trimmed.pop()
            changed = True
    return trimmed


def _split_house_number(tokens: List[str]) -> Tuple[List[str], Optional[str]]:
    # Merge "10 a" / "10 bis" into a single civic number token.
    merged: List[str] = []
    for tok in tokens:
        if merged and re.fullmatch(r"\d+", merged[-1]) and ((len(tok) == 1 and tok.isalpha()) or tok == "bis"):
            merged[-1] = merged[-1] + tok
            continue
        merged.append(tok)

    for idx in range(len(merged) - 1, 0, -1):
        trailing_ok = idx == len(merged) - 1 or merged[idx + 1] in _UNIT_MARKERS
        if trailing_ok and _HOUSE_NUMBER_RE.match(merged[idx]):
            street = [tok for tok in merged[:idx] if tok not in _NUMBER_MARKERS]
            if street:
                return street, merged[idx]
    return [tok for tok in merged if tok not in _NUMBER_MARKERS], None


def normalize_address(address: Optional[str], city: Optional[str] = None) -> NormalizedAddress:
    """Canonicalise a free-text address into street / house number / city.

    Lower-cases, folds diacritics, strips punctuation noise and expands the
    common street-type abbreviations. When nothing comparable survives the
    original display string is kept as the street.
    """
    display = clean_whitespace(address or "")
    city_norm = city_key(city) or None
    tokens = _tokens(display)
    tokens = _strip_trailing_place(tokens, city_norm.split(" ") if city_norm else [])
    street_tokens, house_number = _split_house_number(tokens)
    street = " ".join(street_tokens)
    if not street:
        return NormalizedAddress(street=display, house_number=None, city=city_norm, display=display)
    return NormalizedAddress(street=street, house_number=house_number, city=city_norm, display=display)


def is_generic_address(address: Optional[str]) -> bool:
    """Return True when an address is too vague to identify a building."""
    text = clean_whitespace(address or "")
    if not text:
        return True
    folded = city_key(text)
    if folded in GENERIC_PLACES:
        return True
    if not re.search(r"\d", text):
        return True
    return len(folded) < 5


def identity_key(address: Optional[str], city: Optional[str]) -> str:
    """Return the address + city identity used to match canonical records."""
    normalized = normalize_address(address, city)
    street = normalized.key if normalized.street != normalized.display else city_key(normalized.display)
    return f"{street}|{normalized.city or ''}"


def parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)
    clean = str(value).replace(" ", "").replace("\xa0", "").replace("€", "")
    # "300.000" and "300.000,50" use dots as thousands separators.
    if re.fullmatch(r"\d{1,3}(\.\d{3})+(,\d+)?", clean):
        clean = clean.replace(".", "")
    clean = clean.replace(",", ".")
    clean = re.sub(r"[^0-9.]+", "", clean)
    if not clean:
        return None
    try:
        return float(clean)
    except ValueError:
        return None


def parse_int(value: Any) -> Optional[int]:
    number = parse_float(value)
    if number is None:
        return None
    return int(round(number))


def _optional_text(value: Any) -> Optional[str]:
    text = sanitize_text(value)
    return text or None


def _ensure_token_list(raw_value: Any) -> Tuple[str, ...]:
    """Normalize image hashes into a tuple of unique strings."""
    if raw_value is None:
        return ()
    if isinstance(raw_value, float) and math.isnan(raw_value):
        return ()
    if hasattr(raw_value, "tolist") and not isinstance(raw_value, str):
        raw_value = raw_value.tolist()
    if isinstance(raw_value, str):
        stripped = raw_value.strip()
        if not stripped:
            return ()
        if stripped.startswith("[") and stripped.endswith("]"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                raw_value = parsed
            else:
                raw_value = [stripped]
        else:
            raw_value = re.split(r"[,;\s]+", stripped)
    tokens: List[str] = []
    for tok in raw_value if isinstance(raw_value, (list, tuple, set)) else [raw_value]:
        if tok is None:
            continue
        tok_str = str(tok).strip().lower()
        if tok_str and tok_str not in tokens:
            tokens.append(tok_str)
    return tuple(tokens)


def _timestamp(value: Any):
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    parsed = pd.to_datetime(value, errors="coerce", utc=True)
    if pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def listing_from_record(record: Dict[str, Any]) -> RawListing:
    """Build a RawListing from a loosely-typed record (CSV row, JSON object)."""
    row = {COLUMN_ALIASES.get(key, key): value for key, value in record.items()}
    external_id = _optional_text(row.get("external_id"))
    if external_id and re.fullmatch(r"\d+\.0", external_id):
        external_id = external_id[:-2]
    return RawListing(
        source=(_optional_text(row.get("source")) or "unknown").lower(),
        external_id=external_id,
        address=sanitize_text(row.get("address")),
        city=_optional_text(row.get("city")),
        price=parse_float(row.get("price")),
        size=parse_float(row.get("size")),
        bedrooms=parse_int(row.get("bedrooms")),
        bathrooms=parse_int(row.get("bathrooms")),
        floor=_optional_text(row.get("floor")),
        title=sanitize_text(row.get("title")),
        description=sanitize_text(row.get("description")),
        contact=sanitize_text(row.get("contact")),
        url=_optional_text(row.get("url")),
        image_hashes=_ensure_token_list(row.get("image_hashes")),
        advertiser=_optional_text(row.get("advertiser")),
        contact_type=_optional_text(row.get("contact_type")),
        agency_id=_optional_text(row.get("agency_id")),
        agency_name=_optional_text(row.get("agency_name")),
        observed_at=_timestamp(row.get("observed_at")),
    )


def listings_from_frame(df: pd.DataFrame) -> List[RawListing]:
    if df is None or df.empty:
        return []
    records = df.astype(object).where(pd.notna(df), None).to_dict("records")
    listings = [listing_from_record(rec) for rec in records]
    logger.info("Loaded %s listings from %s columns.", len(listings), len(df.columns))
    return listings


def load_listings(path) -> List[RawListing]:
    """Read the listing input stream from CSV, JSON or Parquet."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Listing input not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str).fillna("")
    elif suffix in {".json", ".jsonl"}:
        df = pd.read_json(path, orient="records", lines=suffix == ".jsonl", dtype=False)
    elif suffix == ".parquet":
        df = pd.read_parquet(path)
    else:
        raise ValueError(f"Unsupported listing input format: {path.suffix}")
    unknown = [col for col in df.columns if COLUMN_ALIASES.get(col, col) not in LISTING_COLUMNS]
    if unknown:
        logger.debug("Ignoring unknown listing columns: %s", ", ".join(map(str, unknown)))
    return listings_from_frame(df)
