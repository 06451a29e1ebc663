import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, insert, select

from bankimport.db.tables import transaction_fingerprints, transactions
from bankimport.domain.imports.errors import ColumnSetMismatch, PersistenceErrorKind
from bankimport.domain.imports.fingerprinting import DuplicateDetector
from bankimport.domain.imports.parser import CandidateTransaction
from bankimport.domain.imports.persistence import PersistenceBatcher, build_transaction_row, check_column_set


def _candidate(row_number, description, amount="-10.00"):
    return CandidateTransaction(
        row_number=row_number,
        booked_date=datetime(2024, 3, row_number),
        processed_date=datetime(2024, 3, row_number),
        amount=Decimal(amount),
        currency="EUR",
        description=description,
        partner=description,
        type="Imported",
        import_data={"Partner": description},
    )


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


def test_batch_is_written_when_full_and_fingerprints_indexed(engine):
    detector = DuplicateDetector(engine)
    batcher = PersistenceBatcher(engine, detector, user_id="user-1", import_id="imp-1", batch_size=2, chunk_size=1)

    assert batcher.add(_candidate(1, "Bakery")) == []
    assert batcher.pending_count == 1
    outcomes = batcher.add(_candidate(2, "Butcher"))

    assert [outcome.success for outcome in outcomes] == [True, True]
    assert batcher.pending_count == 0
    assert _count(engine, transactions) == 2
    assert _count(engine, transaction_fingerprints) == 2

    with engine.connect() as conn:
        stored = conn.execute(
            select(transactions.c.fingerprint, transactions.c.import_id, transactions.c.import_data)
            .where(transactions.c.id == outcomes[0].transaction_id)
        ).mappings().one()
    assert stored["fingerprint"] == outcomes[0].fingerprint
    assert stored["import_id"] == "imp-1"
    assert stored["import_data"] == {"Partner": "Bakery"}


def test_pending_fingerprints_are_tracked_until_flush(engine):
    detector = DuplicateDetector(engine)
    batcher = PersistenceBatcher(engine, detector, user_id="user-1", import_id="imp-1", batch_size=10)
    candidate = _candidate(1, "Bakery")
    candidate.fingerprint = detector.fingerprint(candidate.fields())

    batcher.add(candidate)
    assert batcher.has_pending_fingerprint(candidate.fingerprint)

    batcher.flush()
    assert not batcher.has_pending_fingerprint(candidate.fingerprint)
    assert batcher.flush() == []


def test_fingerprint_conflict_falls_back_to_row_by_row(engine):
    detector = DuplicateDetector(engine)
    clashing = _candidate(1, "Bakery")
    clashing_fingerprint = detector.fingerprint(clashing.fields())
    with engine.begin() as conn:
        conn.execute(
            insert(transaction_fingerprints),
            [{"id": str(uuid.uuid4()), "user_id": "user-1", "fingerprint": clashing_fingerprint, "transaction_id": "old"}],
        )

    batcher = PersistenceBatcher(engine, detector, user_id="user-1", import_id="imp-1", batch_size=10)
    batcher.add(clashing)
    batcher.add(_candidate(2, "Butcher"))
    outcomes = batcher.flush()

    assert outcomes[0].success is False
    assert outcomes[0].error_kind is PersistenceErrorKind.FINGERPRINT_CONFLICT
    assert outcomes[0].row_number == 1
    assert outcomes[1].success is True
    assert _count(engine, transactions) == 1


def test_fingerprint_index_is_per_user(engine):
    detector = DuplicateDetector(engine)
    for user_id in ("user-1", "user-2"):
        batcher = PersistenceBatcher(engine, detector, user_id=user_id, import_id=None)
        batcher.add(_candidate(1, "Bakery"))
        assert batcher.flush()[0].success is True
    assert _count(engine, transaction_fingerprints) == 2


def test_check_column_set_rejects_mismatched_rows():
    first = build_transaction_row({"amount": Decimal("1")}, user_id="u", import_id="i")
    second = dict(first)
    second.pop("notes")
    second["unexpected"] = 1

    check_column_set([first, dict(first)])
    with pytest.raises(ColumnSetMismatch):
        check_column_set([first, second])
