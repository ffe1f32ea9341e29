from listing_schema import CONFIDENCE_HIGH, CONFIDENCE_LOW, CONFIDENCE_MEDIUM, OWNER_AGENCY, OWNER_PRIVATE
from pipelines.owner_classifier import (
    OwnerSignals,
    advertiser_agency_rule,
    advertiser_private_rule,
    agency_identity_rule,
    agency_keywords_rule,
    agency_presence_rule,
    classify_listing,
    classify_owner,
    contact_type_private_rule,
    default_private_rule,
    looks_like_agency_name,
    private_keywords_rule,
)


def test_scenario_b_private_keywords(make_listing):
    listing = make_listing(description="no agenzie, vendita diretta dal proprietario")
    result = classify_listing(listing)
    assert result.owner_type == OWNER_PRIVATE
    assert result.confidence == CONFIDENCE_HIGH
    assert result.rule == "private_keywords"


def test_scenario_c_agency_identity(make_listing):
    listing = make_listing(agency_id="AG-17", agency_name="Immobiliare Rossi")
    result = classify_listing(listing)
    assert result.owner_type == OWNER_AGENCY
    assert result.confidence == CONFIDENCE_HIGH
    assert result.agency_name == "Immobiliare Rossi"


def test_classification_is_idempotent(make_listing):
    listing = make_listing(description="Agenzia immobiliare propone trilocale", agency_id="9")
    assert classify_listing(listing) == classify_listing(listing)


def test_advertiser_private_rule():
    result = advertiser_private_rule(OwnerSignals(advertiser="Privato"))
    assert (result.owner_type, result.confidence) == (OWNER_PRIVATE, CONFIDENCE_HIGH)
    assert advertiser_private_rule(OwnerSignals()) is None


def test_advertiser_agency_rule_drops_placeholder_names():
    result = advertiser_agency_rule(OwnerSignals(advertiser="agenzia", agency_name="privato"))
    assert result.owner_type == OWNER_AGENCY
    assert result.agency_name is None
    assert advertiser_agency_rule(OwnerSignals(advertiser="privato")) is None


def test_contact_type_private_rule():
    assert contact_type_private_rule(OwnerSignals(contact_type="private")).owner_type == OWNER_PRIVATE
    assert contact_type_private_rule(OwnerSignals(contact_type="agency")) is None


def test_agency_identity_rule_needs_id_and_name():
    assert agency_identity_rule(OwnerSignals(agency_id="7")) is None
    assert agency_identity_rule(OwnerSignals(agency_name="Casa Blu")) is None
    assert agency_identity_rule(OwnerSignals(agency_id="7", agency_name="Casa Blu")).agency_name == "Casa Blu"


def test_private_keywords_rule_confidence_by_family_count():
    single = private_keywords_rule(OwnerSignals(description="Vendita diretta, trilocale luminoso"))
    assert single.confidence == CONFIDENCE_MEDIUM
    double = private_keywords_rule(OwnerSignals(description="Privato vende, no agenzie"))
    assert double.confidence == CONFIDENCE_HIGH
    assert private_keywords_rule(OwnerSignals(description="Trilocale luminoso")) is None


def test_agency_keywords_rule():
    strong = agency_keywords_rule(OwnerSignals(description="La nostra agenzia immobiliare propone"))
    assert (strong.owner_type, strong.confidence) == (OWNER_AGENCY, CONFIDENCE_HIGH)

    weak = OwnerSignals(description="Contattare immobiliare")
    assert agency_keywords_rule(weak) is None

    with_id = agency_keywords_rule(OwnerSignals(description="Contattare immobiliare", agency_id="12"))
    assert with_id.confidence == CONFIDENCE_MEDIUM

    detailed = agency_keywords_rule(OwnerSignals(description="Trilocale luminoso con balcone. " * 12 + "immobiliare"))
    assert detailed.confidence == CONFIDENCE_MEDIUM


def test_agency_presence_rule():
    result = agency_presence_rule(OwnerSignals(agency_id="55"))
    assert (result.owner_type, result.confidence) == (OWNER_AGENCY, CONFIDENCE_LOW)
    assert agency_presence_rule(OwnerSignals()) is None


def test_default_private_rule():
    result = default_private_rule(OwnerSignals())
    assert (result.owner_type, result.confidence) == (OWNER_PRIVATE, CONFIDENCE_LOW)


def test_rule_order_is_respected():
    signals = OwnerSignals(advertiser="privato", agency_id="1", agency_name="Casa Blu")
    assert classify_owner(signals).rule == "advertiser_private"
    assert classify_owner(signals, rules=[agency_identity_rule]).rule == "agency_identity"


def test_empty_rule_chain_defaults_to_private():
    assert classify_owner(OwnerSignals(), rules=[]).owner_type == OWNER_PRIVATE


def test_looks_like_agency_name():
    assert looks_like_agency_name("Agenzia Sole")
    assert not looks_like_agency_name("Privato")
    assert not looks_like_agency_name("proprietario diretto")
    assert not looks_like_agency_name("")
