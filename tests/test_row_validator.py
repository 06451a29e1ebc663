from datetime import datetime
from decimal import Decimal

from bankimport.domain.imports.parser import CandidateTransaction
from bankimport.domain.imports.validators import RowValidator, is_valid_date_value, validate_iban


def _valid_record(**overrides):
    record = {
        "booked_date": "2024-01-31",
        "amount": "-12.50",
        "partner": "Cafe",
        "description": "Lunch",
        "currency": "EUR",
    }
    record.update(overrides)
    return record


def test_complete_record_is_valid():
    result = RowValidator().validate(_valid_record())
    assert result.valid is True
    assert result.errors == []


def test_candidate_transactions_are_accepted_directly():
    candidate = CandidateTransaction(
        row_number=1,
        booked_date=datetime(2024, 1, 31),
        amount=Decimal("5.00"),
        currency="EUR",
        partner="Cafe",
        description="Cafe",
    )
    assert RowValidator().validate(candidate).valid is True


def test_every_missing_required_field_is_reported():
    result = RowValidator().validate({"amount": "1.00"})
    assert result.valid is False
    assert result.errors == [
        "Missing required field: booked_date",
        "Missing required field: partner",
        "Missing required field: description",
        "Missing required field: currency",
    ]


def test_zero_and_non_numeric_amounts_are_rejected():
    assert RowValidator().validate(_valid_record(amount="0.00")).errors == ["Amount must not be zero"]
    assert RowValidator().validate(_valid_record(amount="twelve")).errors == ["Amount must be numeric, got 'twelve'"]


def test_currency_must_be_three_uppercase_letters():
    result = RowValidator().validate(_valid_record(currency="eur"))
    assert result.errors == ["Currency must be a 3-letter uppercase code, got 'eur'"]


def test_strict_date_formats():
    assert is_valid_date_value("2024-01-31")
    assert is_valid_date_value("31.01.2024")
    assert is_valid_date_value(datetime(2024, 1, 31))
    assert not is_valid_date_value("2024-1-31")
    assert not is_valid_date_value("2024-02-30")
    assert not is_valid_date_value(20240131)

    result = RowValidator().validate(_valid_record(processed_date="31/31/2024"))
    assert result.errors == ["Invalid date format for processed_date: '31/31/2024'"]


def test_iban_shape_check():
    assert validate_iban("DE89 3704 0044 0532 0130 00") == (True, None)
    ok, error = validate_iban("12345")
    assert ok is False
    assert "not a valid IBAN" in error

    result = RowValidator().validate(_valid_record(source_iban="12345"))
    assert result.valid is False


def test_length_limits():
    result = RowValidator().validate(_valid_record(description="x" * 1001, partner="p" * 256))
    assert result.errors == ["Description exceeds 1000 characters", "Partner exceeds 255 characters"]
