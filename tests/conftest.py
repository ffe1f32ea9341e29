import itertools

import pytest

from listing_schema import RawListing


_ids = itertools.count(1)


def build_listing(**overrides) -> RawListing:
    values = {
        "source": "idealista",
        "external_id": str(next(_ids)),
        "address": "Via Roma 10",
        "city": "Milano",
    }
    values.update(overrides)
    if "image_hashes" in values:
        values["image_hashes"] = tuple(values["image_hashes"])
    return RawListing(**values)


@pytest.fixture
def make_listing():
    return build_listing


@pytest.fixture
def scenario_a():
    first = build_listing(
        source="immobiliare",
        external_id="a1",
        price=300000,
        size=80,
        advertiser="agenzia",
        agency_name="Agenzia Sole",
    )
    second = build_listing(
        source="idealista",
        external_id="b2",
        price=305000,
        size=82,
        advertiser="privato",
    )
    return [first, second]
