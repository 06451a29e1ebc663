from datetime import datetime
from decimal import Decimal

import pytest

from bankimport.domain.imports.errors import RowParseError
from bankimport.domain.imports.mapping import IndexColumnMapping, resolve_mapped_fields
from bankimport.domain.imports.parser import (
    AmountFormat,
    FormatConfig,
    RowParser,
    parse_amount,
    parse_date,
    suggest_amount_format,
    suggest_date_format,
    to_strptime_format,
)
from bankimport.domain.imports.processors.csv_processor import RawRow

HEADERS = ["Date", "Amount", "Partner", "Description", "Balance", "Target IBAN"]
MAPPING = IndexColumnMapping({
    "booked_date": 0,
    "amount": 1,
    "partner": 2,
    "description": 3,
    "balance_after_transaction": 4,
    "target_iban": 5,
})


def _parser(**config):
    return RowParser(resolve_mapped_fields(MAPPING), HEADERS, FormatConfig(**config))


@pytest.mark.parametrize(
    "value,amount_format,expected",
    [
        ("1,234.56", "1,234.56", Decimal("1234.56")),
        ("1.234,56", "1.234,56", Decimal("1234.56")),
        ("1234,56", "1234,56", Decimal("1234.56")),
        ("-12.50 EUR", "1,234.56", Decimal("-12.50")),
        ("€ 1.000,00", "eu", Decimal("1000.00")),
    ],
)
def test_parse_amount_separator_profiles(value, amount_format, expected):
    assert parse_amount(value, amount_format) == expected


def test_parenthesised_and_trailing_minus_amounts_are_negative():
    assert parse_amount("(45.00)") == Decimal("-45.00")
    assert parse_amount("45.00-") == Decimal("-45.00")


def test_expense_positive_strategy_negates_positive_amounts():
    assert parse_amount("25.00", sign_strategy="expense_positive") == Decimal("-25.00")
    assert parse_amount("-25.00", sign_strategy="expense_positive") == Decimal("-25.00")
    assert parse_amount("25.00", sign_strategy="income_positive") == Decimal("25.00")


@pytest.mark.parametrize("value", ["", "abc", "--", "1.2.3"])
def test_parse_amount_rejects_non_numeric(value):
    with pytest.raises(RowParseError) as exc_info:
        parse_amount(value)
    assert exc_info.value.field == "amount"


def test_php_style_tokens_translate_to_strptime():
    assert to_strptime_format("d.m.Y") == "%d.%m.%Y"
    assert to_strptime_format("Y-m-d H:i:s") == "%Y-%m-%d %H:%M:%S"
    assert to_strptime_format("Y-m-d\\TH:i") == "%Y-%m-%dT%H:%M"
    assert to_strptime_format("%d/%m/%Y") == "%d/%m/%Y"


def test_parse_date_uses_configured_format_then_fallbacks():
    assert parse_date("31.01.2024", "d.m.Y") == datetime(2024, 1, 31)
    assert parse_date("2024-01-31", "d.m.Y") == datetime(2024, 1, 31)
    assert parse_date("not a date", "d.m.Y") is None
    assert parse_date("  ", "d.m.Y") is None


def test_suggestions_from_sample_values():
    assert suggest_date_format(["2024-01-31"]) == "Y-m-d"
    assert suggest_date_format(["31.01.2024", "05.02.2024"]) == "d.m.Y"
    assert suggest_date_format(["01/31/2024"]) == "m/d/Y"
    assert suggest_amount_format(["1.234,56", "2.000,10"]) == AmountFormat.EU.value
    assert suggest_amount_format(["1.234,56", "-12,00", "3,10"]) == AmountFormat.PLAIN.value
    assert suggest_amount_format(["1,234.56", "12.00"]) == AmountFormat.US.value
    assert suggest_amount_format([]) == AmountFormat.US.value


def test_parse_row_into_candidate():
    parser = _parser(date_format="d.m.Y", amount_format="1.234,56", currency="EUR")
    row = RawRow(3, ["31.01.2024", "-1.234,56", "Landlord", "Rent January", "2.000,00", "de89 3704 0044 0532 0130 00"])

    candidate = parser.parse(row)

    assert candidate.row_number == 3
    assert candidate.booked_date == datetime(2024, 1, 31)
    assert candidate.processed_date == datetime(2024, 1, 31)
    assert candidate.amount == Decimal("-1234.56")
    assert candidate.balance_after_transaction == Decimal("2000.00")
    assert candidate.currency == "EUR"
    assert candidate.target_iban == "DE89370400440532013000"
    assert candidate.type == "Imported"
    assert candidate.import_data["Partner"] == "Landlord"


def test_description_defaults_to_partner():
    candidate = _parser(date_format="Y-m-d").parse(RawRow(1, ["2024-01-31", "10.00", "Cafe", "", "", ""]))
    assert candidate.description == "Cafe"


def test_unparseable_balance_is_dropped_not_fatal():
    candidate = _parser(date_format="Y-m-d").parse(RawRow(1, ["2024-01-31", "10.00", "Cafe", "Lunch", "n/a", ""]))
    assert candidate.balance_after_transaction is None


def test_bad_booked_date_raises_parse_error():
    with pytest.raises(RowParseError) as exc_info:
        _parser(date_format="d.m.Y").parse(RawRow(1, ["yesterday", "10.00", "Cafe", "", "", ""]))
    assert exc_info.value.field == "booked_date"


def test_parse_error_keeps_the_fields_that_did_convert():
    with pytest.raises(RowParseError) as exc_info:
        _parser(date_format="d.m.Y").parse(RawRow(4, ["yesterday", "-3.00", "Kiosk", "Newspaper", "", ""]))

    partial = exc_info.value.partial
    assert partial.row_number == 4
    assert partial.booked_date is None
    assert partial.amount == Decimal("-3.00")
    assert partial.partner == "Kiosk"
    assert partial.import_data["Date"] == "yesterday"


def test_missing_amount_raises_parse_error():
    with pytest.raises(RowParseError, match="amount"):
        _parser(date_format="Y-m-d").parse(RawRow(1, ["2024-01-31", "", "Cafe", "", "", ""]))


def test_overrides_replace_cells_before_parsing():
    parser = _parser(date_format="Y-m-d")
    row = RawRow(2, ["yesterday", "10.00", "Cafe", "", "", ""])

    candidate = parser.parse(row, {"booked_date": "2024-02-01", "amount": "-3.20", "unknown": "x"})

    assert candidate.booked_date == datetime(2024, 2, 1)
    assert candidate.amount == Decimal("-3.20")
    assert candidate.import_data["Date"] == "yesterday"


def test_short_row_and_unnamed_columns_in_provenance():
    parser = RowParser(resolve_mapped_fields(IndexColumnMapping({"booked_date": 0, "amount": 1})), ["Date", ""], FormatConfig())
    assert parser.provenance(RawRow(1, ["2024-01-31", "5", "extra"])) == {"Date": "2024-01-31", "col_1": "5", "col_2": "extra"}
