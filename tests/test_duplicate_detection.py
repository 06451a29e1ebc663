import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert

from bankimport.db.tables import transaction_fingerprints, transactions
from bankimport.domain.imports.fingerprinting import (
    DuplicateDetector,
    compute_fingerprint,
    description_similarity,
    duplicate_score,
    is_duplicate_score,
    normalize_record,
)


def _store_transaction(engine, user_id="user-1", fingerprint=None, **values):
    row = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "booked_date": datetime(2024, 1, 31),
        "amount": Decimal("-12.50"),
        "currency": "EUR",
        "description": "Coffee Shop",
        "partner": "Coffee Shop",
    }
    row.update(values)
    with engine.begin() as conn:
        conn.execute(insert(transactions), [row])
        if fingerprint:
            conn.execute(
                insert(transaction_fingerprints),
                [{"id": str(uuid.uuid4()), "user_id": user_id, "fingerprint": fingerprint, "transaction_id": row["id"]}],
            )
    return row["id"]


def test_fingerprint_ignores_case_whitespace_and_amount_sign():
    first = compute_fingerprint(normalize_record({
        "booked_date": datetime(2024, 1, 31, 14, 5),
        "amount": Decimal("-12.5"),
        "description": "Coffee  Shop",
    }))
    second = compute_fingerprint(normalize_record({
        "booked_date": "2024-01-31",
        "amount": "12.50",
        "description": "coffee shop!",
    }))
    assert first == second
    assert len(first) == 64


def test_fingerprint_changes_with_reference():
    base = {"booked_date": "2024-01-31", "amount": "12.50", "description": "Coffee"}
    assert compute_fingerprint(normalize_record(base)) != compute_fingerprint(
        normalize_record(dict(base, transaction_id="REF-1"))
    )


def test_normalize_record_consults_aliases():
    normalized = normalize_record({"date": "2024-01-31", "value": "3.00", "partner": "Cafe", "reference": "R1"})
    assert normalized == {
        "description": "Cafe",
        "booked_date": "2024-01-31",
        "processed_date": None,
        "amount": "3.00",
        "reference_id": "R1",
    }


def test_identical_records_score_one():
    record = {"booked_date": "2024-01-31", "amount": "12.50", "description": "Coffee", "reference_id": "R1"}
    assert duplicate_score(record, record) == Decimal("1.00")


def test_score_threshold_is_inclusive():
    assert is_duplicate_score(Decimal("0.80")) is True
    assert is_duplicate_score(Decimal("0.79")) is False


def test_date_and_amount_alone_reach_the_threshold():
    candidate = {"booked_date": "2024-01-31", "amount": "-12.50", "description": "Coffee"}
    existing = {"booked_date": datetime(2024, 1, 31), "amount": Decimal("12.50"), "description": "Rent"}
    assert duplicate_score(candidate, existing) == Decimal("0.80")


def test_description_similarity_normalizes_text():
    assert description_similarity("Café Central", "cafe central") == 1.0
    assert description_similarity("", None) == 1.0
    assert description_similarity("Coffee", "Rent") < 0.9


def test_check_finds_exact_fingerprint_match(engine):
    detector = DuplicateDetector(engine)
    record = {"booked_date": datetime(2024, 1, 31), "amount": Decimal("-12.50"), "description": "Coffee Shop", "currency": "EUR"}
    fingerprint = detector.fingerprint(record)
    existing_id = _store_transaction(engine, fingerprint=fingerprint)

    check = detector.check("user-1", record)

    assert check.is_duplicate is True
    assert check.reason == "fingerprint"
    assert check.matched_transaction_id == existing_id


def test_check_finds_fuzzy_match_within_window(engine):
    existing_id = _store_transaction(engine, booked_date=datetime(2024, 1, 31, 9, 0), description="COFFEE SHOP")
    detector = DuplicateDetector(engine)

    check = detector.check("user-1", {
        "booked_date": datetime(2024, 1, 31),
        "amount": Decimal("12.50"),
        "description": "Coffee Shop #12",
        "currency": "EUR",
    })

    assert check.is_duplicate is True
    assert check.reason == "fuzzy"
    assert check.score >= Decimal("0.80")
    assert check.matched_transaction_id == existing_id


def test_check_is_scoped_to_user_and_currency(engine):
    _store_transaction(engine, user_id="someone-else")
    _store_transaction(engine, currency="USD")
    detector = DuplicateDetector(engine)

    check = detector.check("user-1", {
        "booked_date": datetime(2024, 1, 31),
        "amount": Decimal("-12.50"),
        "description": "Coffee Shop",
        "currency": "EUR",
    })

    assert check.is_duplicate is False


def test_transactions_outside_the_window_are_not_candidates(engine):
    _store_transaction(engine, booked_date=datetime(2024, 1, 28))
    detector = DuplicateDetector(engine, window_days=1)

    assert detector.find_candidates("user-1", datetime(2024, 1, 31), "EUR") == []
    assert len(detector.find_candidates("user-1", datetime(2024, 1, 29), "EUR")) == 1


def test_check_pending_scores_unflushed_rows_of_the_same_import(engine):
    detector = DuplicateDetector(engine)
    record = {"booked_date": datetime(2024, 3, 1), "amount": Decimal("-20.00"), "description": "Petrol", "currency": "EUR"}
    pending = [
        {"booked_date": datetime(2024, 3, 1), "amount": Decimal("-20.00"), "description": "Groceries", "currency": "USD"},
        {"booked_date": datetime(2024, 3, 4), "amount": Decimal("-20.00"), "description": "Groceries", "currency": "EUR"},
    ]

    assert detector.check_pending(record, pending) is None

    pending.append({"booked_date": datetime(2024, 3, 1), "amount": Decimal("-20.00"), "description": "Groceries", "currency": "EUR"})
    check = detector.check_pending(record, pending)
    assert check.is_duplicate is True
    assert check.reason == "in_file"
    assert check.score == Decimal("0.80")
