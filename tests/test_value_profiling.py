import pytest

from bankimport.domain.imports.processors.csv_processor import RawRow
from bankimport.domain.imports.profiling import (
    column_confidence,
    detect_mapping,
    looks_like_amount,
    looks_like_date,
    looks_like_iban,
    profile_column,
)
from bankimport.domain.imports.uploads import start_import

from tests.utils.statements import csv_bytes

ROWS = [
    RawRow(1, ["2024-01-05", "-12.50", "Bakery"]),
    RawRow(2, ["2024-01-06", "1500.00", "Employer"]),
]


@pytest.mark.parametrize(
    "value,date,amount,iban",
    [
        ("2024-01-05", True, False, False),
        ("31.01.2024", True, True, False),
        ("1.234,56", False, True, False),
        ("-12.50", False, True, False),
        ("0", False, False, False),
        ("DE89 3704 0044 0532 0130 00", False, False, True),
        ("Bakery", False, False, False),
    ],
)
def test_value_shapes(value, date, amount, iban):
    assert looks_like_date(value) is date
    assert looks_like_amount(value) is amount
    assert looks_like_iban(value) is iban


def test_profile_counts_nulls_uniques_and_shapes():
    profile = profile_column(0, "When", ["31.01.2024", "31.01.2024", "", "01.02.2024"])

    assert profile.null_ratio == 0.25
    assert profile.unique_ratio == pytest.approx(2 / 3)
    assert profile.kind_scores["date"] == 1.0
    assert profile.kind_scores["text"] == 0.0
    assert profile.value_kind == "date"


def test_empty_column_has_no_value_kind():
    assert profile_column(0, "Misc", ["", ""]).value_kind is None
    assert profile_column(0, "Misc", []).value_kind is None


def test_values_map_columns_whose_headers_say_nothing():
    result = detect_mapping(["When", "How much", "Who"], ROWS)

    assert result.mapping.fields["booked_date"] == 0
    assert result.mapping.fields["amount"] == 1
    assert result.mapping.fields["partner"] == 2
    assert [column.source for column in result.columns] == ["values", "values", "values"]
    assert [column.confidence for column in result.columns] == [0.55, 0.55, 0.55]
    assert result.overall_confidence == 0.55


def test_header_matches_backed_by_values_are_fully_confident():
    result = detect_mapping(["Date", "Amount", "Partner"], ROWS)

    assert [column.source for column in result.columns] == ["exact", "exact", "exact"]
    assert result.overall_confidence == 1.0


def test_header_match_contradicted_by_values_scores_lower():
    rows = [RawRow(1, ["yesterday", "-12.50", "Bakery"]), RawRow(2, ["today", "3.00", "Cafe"])]
    result = detect_mapping(["Date", "Amount", "Partner"], rows)

    date_column = result.columns[0]
    assert date_column.field == "booked_date"
    assert date_column.confidence == 0.6
    assert result.overall_confidence == pytest.approx((0.6 + 1.0 + 1.0) / 3, abs=1e-4)


def test_value_pass_never_takes_a_field_a_header_claimed():
    rows = [RawRow(1, ["2024-01-05", "2024-01-06", "-1.00"]), RawRow(2, ["2024-01-07", "2024-01-08", "-2.00"])]
    result = detect_mapping(["Date", "Settled", "Amount"], rows)

    assert result.mapping.fields["booked_date"] == 0
    assert result.mapping.fields["processed_date"] == 1
    assert result.columns[1].source == "values"


def test_mixed_shapes_below_threshold_stay_unmapped():
    rows = [RawRow(1, ["2024-01-05", "-1.00"]), RawRow(2, ["2024-01-06", "n/a"]), RawRow(3, ["2024-01-07", "Cafe"])]
    result = detect_mapping(["Date", "Column B"], rows)

    assert result.columns[1].field is None
    assert result.mapping.fields["amount"] is None


def test_confidence_is_capped():
    profile = profile_column(0, "Date", ["2024-01-05"])
    assert column_confidence(profile, "booked_date", "exact") == 1.0
    assert column_confidence(profile, "booked_date", "pattern") == 0.97


def test_upload_stores_profiles_and_confidence(engine):
    content = csv_bytes("When,How much,Who", "2024-01-05,-12.50,Bakery", "2024-01-06,1500.00,Employer")

    job = start_import(engine, user_id="user-1", content=content, filename="statement.csv")

    metadata = job["metadata"]
    assert metadata["detected_mapping"]["booked_date"] == 0
    assert metadata["detected_mapping"]["amount"] == 1
    assert metadata["suggested_date_format"] == "Y-m-d"
    assert metadata["detection"]["overall_confidence"] == 0.55
    assert [column["value_kind"] for column in metadata["detection"]["columns"]] == ["date", "amount", "text"]
