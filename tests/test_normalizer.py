import pytest

from pipelines.normalizer import (
    city_key,
    identity_key,
    is_generic_address,
    listing_from_record,
    load_listings,
    normalize_address,
    parse_float,
)


def test_expands_dotted_abbreviations_and_strips_city():
    result = normalize_address("V.le Monza 12, Milano", "Milano")
    assert result.street == "viale monza"
    assert result.house_number == "12"
    assert result.city == "milano"


def test_strips_postal_code_and_country():
    result = normalize_address("Corso Buenos Aires 5 20124 Milano Italia", "Milano")
    assert result.key == "corso buenos aires 5"


def test_folds_diacritics():
    result = normalize_address("Piazza Città 3", "Forlì")
    assert result.street == "piazza citta"
    assert result.city == "forli"


def test_number_marker_and_letter_suffix():
    assert normalize_address("Via Roma n. 10", "Milano").key == "via roma 10"
    assert normalize_address("Via Roma 10 a", "Milano").house_number == "10a"


def test_number_inside_street_name_is_not_a_house_number():
    result = normalize_address("Via 25 Aprile", "Milano")
    assert result.house_number is None
    assert result.street == "via 25 aprile"


def test_keeps_display_when_nothing_survives():
    result = normalize_address("Milano", "Milano")
    assert result.display == "Milano"
    assert not result.is_structured


def test_identity_key_ignores_case_and_punctuation():
    assert identity_key("Via Roma 10", "Milano") == "via roma 10|milano"
    assert identity_key("via roma, 10", "MILANO") == identity_key("Via Roma 10", "Milano")


@pytest.mark.parametrize(
    "address, expected",
    [
        ("", True),
        (None, True),
        ("Milano", True),
        ("Via Roma", True),
        ("Centro 1", False),
        ("Via Roma 10", False),
    ],
)
def test_generic_address_gate(address, expected):
    assert is_generic_address(address) is expected


def test_city_key():
    assert city_key(" Reggio-Emilia ") == "reggio emilia"
    assert city_key(None) == ""


def test_parse_float_formats():
    assert parse_float("300.000") == 300000.0
    assert parse_float("€ 250.000,50") == 250000.5
    assert parse_float("85,5") == 85.5
    assert parse_float(120) == 120.0
    assert parse_float("") is None
    assert parse_float(None) is None


def test_listing_from_record_applies_aliases():
    listing = listing_from_record(
        {
            "portal": "Idealista",
            "property_id": "123",
            "address_street": "Via Roma 10",
            "address_town": "Milano",
            "price": "300.000",
            "photo_fingerprints": "ABC, def",
            "updated_at": "2024-05-01T10:00:00Z",
        }
    )
    assert listing.source == "idealista"
    assert listing.ref == "idealista:123"
    assert listing.price == 300000.0
    assert listing.image_hashes == ("abc", "def")
    assert listing.observed_at.year == 2024


def test_ref_without_external_id_is_stable():
    record = {"source": "manual", "address": "Via Roma 10", "city": "Milano", "price": 300000}
    assert listing_from_record(record).ref == listing_from_record(dict(record)).ref
    assert listing_from_record(record).ref.startswith("manual:")


def test_load_listings_from_csv(tmp_path):
    path = tmp_path / "listings.csv"
    path.write_text(
        "source,external_id,address,city,price,size,advertiser\n"
        "immobiliare,1,Via Roma 10,Milano,300000,80,agenzia\n"
        "idealista,2,Via Roma 10,Milano,,82,privato\n",
        encoding="utf-8",
    )
    listings = load_listings(path)
    assert [item.ref for item in listings] == ["immobiliare:1", "idealista:2"]
    assert listings[1].price is None
    assert listings[1].size == 82.0


def test_load_listings_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_listings(tmp_path / "missing.csv")
    bad = tmp_path / "listings.xml"
    bad.write_text("<x/>", encoding="utf-8")
    with pytest.raises(ValueError):
        load_listings(bad)
