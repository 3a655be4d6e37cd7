from datetime import date

import pytest

from identity_engine.app.utils.canonical import canonicalize, compute_sha256
from identity_engine.app.utils.normalization import (
    normalize_address,
    normalize_document_number,
    normalize_name,
    parse_date,
    parse_mrz_date,
)


@pytest.mark.parametrize(
    "raw",
    ["1974-08-12", "08/12/1974", "12.08.1974", "19740812", "12 AUG 1974"],
)
def test_parse_date_accepts_supported_layouts(raw):
    assert parse_date(raw) == date(1974, 8, 12)


@pytest.mark.parametrize("raw", [None, "", "12/31", "yesterday", "1974-13-01"])
def test_parse_date_rejects_garbage(raw):
    assert parse_date(raw) is None


def test_mrz_dates_pivot_by_purpose():
    assert parse_mrz_date("740812") == date(1974, 8, 12)
    assert parse_mrz_date("341231", future=True) == date(2034, 12, 31)
    assert parse_mrz_date("741332") is None


def test_mrz_expiry_far_in_the_future_belongs_to_previous_century():
    assert parse_mrz_date("991231", future=True) == date(1999, 12, 31)
    assert parse_mrz_date("701231", future=True) == date(2070, 12, 31)


def test_names_ignore_order_case_and_accents():
    assert normalize_name("ERIKSSON, Anna-María") == normalize_name(
        "anna maria eriksson"
    )


def test_addresses_expand_abbreviations():
    assert normalize_address("12 Main St., Springfield") == (
        "12 main street springfield"
    )


def test_document_numbers_drop_separators_and_filler():
    assert normalize_document_number(" l898-902 c3<") == "L898902C3"


def test_canonical_json_is_key_sorted_and_compact():
    encoded = canonicalize({"b": 1, "a": {"d": date(2024, 1, 2), "c": "é"}})

    assert encoded == '{"a":{"c":"é","d":"2024-01-02"},"b":1}'.encode("utf-8")


def test_sha256_accepts_text_and_bytes():
    assert compute_sha256("abc") == compute_sha256(b"abc")
    with pytest.raises(TypeError):
        compute_sha256(123)
