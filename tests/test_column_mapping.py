import pytest

from bankimport.domain.imports.errors import InvalidMappingError
from bankimport.domain.imports.mapping import (
    FieldKind,
    HeaderColumnMapping,
    IndexColumnMapping,
    auto_detect_mapping,
    column_mapping_from_dict,
    compatibility_score,
    detect_header_matches,
    header_match_score,
    resolve_mapped_fields,
    to_header_mapping,
    to_index_mapping,
    validate_mapping,
)


def test_header_mapping_resolves_exact_header_to_index():
    headers = ["Buchungstag", "Betrag", "Empfänger"]
    resolved = to_index_mapping(HeaderColumnMapping({"amount": "Betrag"}), headers)
    assert resolved.fields["amount"] == 1


def test_header_mapping_falls_back_to_fuzzy_match_when_header_renamed():
    headers = ["Date", "Amount EUR", "Partner"]
    resolved = to_index_mapping(HeaderColumnMapping({"amount": "Amount"}), headers)
    assert resolved.fields["amount"] == 1


def test_unresolvable_header_and_out_of_range_index_become_none():
    headers = ["Date", "Amount"]
    by_header = to_index_mapping(HeaderColumnMapping({"partner": "Counterparty Name"}), headers)
    by_index = to_index_mapping(IndexColumnMapping({"booked_date": 0, "partner": 7}), headers)

    assert by_header.fields["partner"] is None
    assert by_index.fields == {"booked_date": 0, "partner": None}


def test_header_missing_from_file_resolves_to_none():
    resolved = to_index_mapping(HeaderColumnMapping({"amount": "Betrag"}), ["Datum", "Amount EUR", "Text"])
    assert resolved.fields["amount"] is None


def test_auto_detect_recognises_german_headers():
    mapping = auto_detect_mapping(["Buchungstag", "Verwendungszweck", "Betrag", "Empfänger", "Saldo"])

    assert mapping.fields["booked_date"] == 0
    assert mapping.fields["description"] == 1
    assert mapping.fields["amount"] == 2
    assert mapping.fields["partner"] == 3
    assert mapping.fields["balance_after_transaction"] == 4


def test_auto_detect_never_assigns_one_header_twice():
    mapping = auto_detect_mapping(["Date", "Value Date", "Amount", "Partner"])

    assert mapping.fields["booked_date"] == 0
    assert mapping.fields["processed_date"] == 1
    used = [index for index in mapping.fields.values() if index is not None]
    assert len(used) == len(set(used))


def test_header_matches_report_how_each_field_matched():
    matches = detect_header_matches(["Buchungsdatum", "Transaction Amount EUR", "Who"])
    assert matches == {"booked_date": (0, "exact"), "amount": (1, "pattern")}


def test_iban_columns_need_a_direction_qualifier():
    mapping = auto_detect_mapping(["Date", "Amount", "Partner", "IBAN", "Counterparty IBAN"])
    assert mapping.fields["target_iban"] == 4
    assert mapping.fields["source_iban"] is None


def test_validate_mapping_reports_missing_required_fields():
    headers = ["Date", "Amount"]
    validation = validate_mapping(IndexColumnMapping({"booked_date": 0, "amount": 1}), headers)

    assert validation.valid is False
    assert validation.errors == ["Missing required field mapping: partner"]


def test_validate_mapping_warns_on_reused_column():
    headers = ["Date", "Amount", "Partner"]
    validation = validate_mapping(
        IndexColumnMapping({"booked_date": 0, "amount": 1, "partner": 2, "description": 2}),
        headers,
    )
    assert validation.valid is True
    assert validation.warnings == ["Multiple fields mapped to the same column"]


def test_column_mapping_from_dict_picks_variant_and_rejects_mixtures():
    assert isinstance(column_mapping_from_dict({"amount": 1, "notes": None}), IndexColumnMapping)
    assert isinstance(column_mapping_from_dict({"amount": "Betrag"}), HeaderColumnMapping)
    with pytest.raises(InvalidMappingError):
        column_mapping_from_dict({"amount": 1, "partner": "Name"})


def test_header_round_trip_survives_reordered_columns():
    original_headers = ["Date", "Amount", "Partner"]
    saved = to_header_mapping(IndexColumnMapping({"booked_date": 0, "amount": 1, "partner": 2}), original_headers)

    reordered = ["Partner", "Date", "Amount"]
    assert to_index_mapping(saved, reordered).fields == {"booked_date": 1, "amount": 2, "partner": 0}


def test_compatibility_score_weights_exact_and_fuzzy_matches():
    saved = HeaderColumnMapping({"booked_date": "Date", "amount": "Amount", "partner": None})

    assert compatibility_score(saved, ["Date", "Amount"]) == 1.0
    assert compatibility_score(saved, ["Date", "Amount EUR"]) == 0.85
    assert compatibility_score(saved, ["Foo", "Bar"]) == 0.0


def test_header_match_score_bounds():
    assert header_match_score("Amount", "amount") == 1.0
    assert header_match_score("Amount", "") == 0.0
    assert header_match_score("Amount", "Amount EUR") >= 0.8


def test_resolved_fields_carry_their_kind():
    fields = resolve_mapped_fields(IndexColumnMapping({"booked_date": 0, "amount": 1, "partner": None, "bogus": 3}))
    kinds = {field.name: field.kind for field in fields}

    assert kinds == {"booked_date": FieldKind.DATE, "amount": FieldKind.AMOUNT}
