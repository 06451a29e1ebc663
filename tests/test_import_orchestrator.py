from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bankimport.core.config import Settings
from bankimport.db.tables import transaction_fingerprints, transactions
from bankimport.domain.imports.errors import ImportStateError
from bankimport.domain.imports.failures import apply_review_action, get_failure, list_failures
from bankimport.domain.imports.fingerprinting import DuplicateCheck, DuplicateDetector
from bankimport.domain.imports.jobs import (
    ImportStatus,
    derive_import_status,
    get_import_job,
    revert_import_job,
    update_import_job,
)
from bankimport.domain.imports.orchestrator import BatchOrchestrator, preview_import, process_import
from bankimport.domain.imports.row_edits import save_row_edit
from bankimport.domain.imports.uploads import start_import

from tests.utils.statements import CLEAN_STATEMENT, MIXED_STATEMENT, STATEMENT_HEADERS, csv_bytes


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


def _failure_types(engine, import_id):
    failures, _ = list_failures(engine, import_id)
    return {failure["row_number"]: failure["error_type"] for failure in failures}


def test_every_row_reaches_exactly_one_terminal_state(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)

    summary = process_import(engine, job["id"], "user-1")

    assert summary.total_rows == 6
    assert summary.processed_rows + summary.failed_rows + summary.skipped_rows == summary.total_rows
    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (2, 2, 2)
    assert summary.status is ImportStatus.PARTIALLY_FAILED
    assert _failure_types(engine, job["id"]) == {
        3: "empty_row",
        4: "parsing_error",
        5: "validation_failed",
        6: "duplicate",
    }

    stored = get_import_job(engine, job["id"])
    assert stored["status"] == "partially_failed"
    assert (stored["total_rows"], stored["processed_rows"], stored["failed_rows"], stored["skipped_rows"]) == (6, 2, 2, 2)
    assert stored["processed_at"] is not None
    assert _count(engine, transactions) == 2
    assert _count(engine, transaction_fingerprints) == 2


def test_in_file_duplicate_is_labelled(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    process_import(engine, job["id"], "user-1")

    duplicates, _ = list_failures(engine, job["id"], error_type="duplicate")
    assert duplicates[0]["metadata"]["reason"] == "in_file"
    assert duplicates[0]["parsed_data"]["partner"] == "Bakery"


def test_parsing_failure_keeps_the_converted_fields(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    process_import(engine, job["id"], "user-1")

    failure = list_failures(engine, job["id"], error_type="parsing_error")[0][0]
    assert failure["row_number"] == 4
    assert failure["parsed_data"]["booked_date"] is None
    assert failure["parsed_data"]["amount"] == "-3.00"
    assert failure["parsed_data"]["partner"] == "Kiosk"
    assert failure["metadata"]["field"] == "booked_date"


@pytest.mark.parametrize("batch_size", [1, 500])
def test_fuzzy_duplicates_do_not_depend_on_batch_size(engine, configured_import, batch_size):
    job = configured_import([
        STATEMENT_HEADERS,
        "2024-03-01,-20.00,Corner Shop,Groceries,X1",
        "2024-03-01,-20.00,Fuel Station,Petrol,X2",
    ])

    summary = process_import(engine, job["id"], "user-1", config=Settings(persistence_batch_size=batch_size))

    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (1, 0, 1)
    assert _failure_types(engine, job["id"]) == {2: "duplicate"}
    assert _count(engine, transactions) == 1


def test_unclosed_quote_does_not_swallow_following_rows(engine, configured_import):
    job = configured_import([STATEMENT_HEADERS, '2024-03-01,-5.00,"Open quote,Snack,S1', *CLEAN_STATEMENT[1:]])

    summary = process_import(engine, job["id"], "user-1")

    assert summary.total_rows == 3
    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (3, 0, 0)
    assert get_import_job(engine, job["id"])["metadata"]["recovered_rows"] == [1]


def test_clean_import_completes(engine, configured_import):
    job = configured_import(CLEAN_STATEMENT)

    summary = process_import(engine, job["id"], "user-1")

    assert summary.status is ImportStatus.COMPLETED
    assert summary.processed_rows == 2
    with engine.connect() as conn:
        amounts = conn.execute(select(transactions.c.amount).order_by(transactions.c.booked_date)).scalars().all()
    assert amounts == [Decimal("-40.00"), Decimal("-9.99")]


def test_reimporting_the_same_file_skips_every_row(engine, configured_import):
    first = configured_import(CLEAN_STATEMENT)
    process_import(engine, first["id"], "user-1")

    second = configured_import(CLEAN_STATEMENT)
    summary = process_import(engine, second["id"], "user-1")

    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (0, 0, 2)
    assert summary.status is ImportStatus.PARTIALLY_FAILED
    assert _count(engine, transactions) == 2
    duplicates, _ = list_failures(engine, second["id"], error_type="duplicate")
    assert {failure["metadata"]["reason"] for failure in duplicates} == {"fingerprint"}


def test_same_file_for_another_user_is_not_a_duplicate(engine, configured_import):
    process_import(engine, configured_import(CLEAN_STATEMENT)["id"], "user-1")
    other = configured_import(CLEAN_STATEMENT, user_id="user-2")

    summary = process_import(engine, other["id"], "user-2")

    assert summary.status is ImportStatus.COMPLETED
    assert _count(engine, transactions) == 4


def test_row_edits_override_cells(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    save_row_edit(engine, job["id"], 4, {"booked_date": "2024-01-08"})

    summary = process_import(engine, job["id"], "user-1")

    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (3, 1, 2)
    assert 4 not in _failure_types(engine, job["id"])


def test_persistence_errors_are_counted_as_failed(engine, configured_import):
    class UnawareDetector(DuplicateDetector):
        def check(self, user_id, record):
            return DuplicateCheck(False, self.fingerprint(record))

    process_import(engine, configured_import(CLEAN_STATEMENT)["id"], "user-1")
    job = configured_import(CLEAN_STATEMENT)

    summary = BatchOrchestrator(engine, job, user_id="user-1", detector=UnawareDetector(engine)).run()

    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (0, 2, 0)
    assert summary.status is ImportStatus.FAILED
    failures, _ = list_failures(engine, job["id"])
    assert {failure["error_type"] for failure in failures} == {"persistence_error"}
    assert failures[0]["metadata"]["persistence_error"] == "fingerprint_conflict"


def test_progress_is_reported_every_n_rows(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    seen = []

    process_import(
        engine,
        job["id"],
        "user-1",
        progress=lambda tally: seen.append(tally.rows_seen),
        config=Settings(progress_every_rows=2),
    )

    assert seen == [2, 4, 6]


def test_unreadable_line_ends_import_and_is_recorded(engine, configured_import):
    job = configured_import([STATEMENT_HEADERS, "2024-01-05,-12.50,Bakery,Bread,R1", '"\x01"\x02', "2024-01-06,-1.00,Kiosk,Gum,R3"])

    summary = process_import(engine, job["id"], "user-1")

    assert summary.total_rows == 1
    assert summary.unreadable_line == 2
    stored = get_import_job(engine, job["id"])
    assert stored["metadata"]["unreadable_line"] == 2
    assert stored["error_message"] == "Stopped at unreadable line 2"


def test_finished_import_cannot_be_processed_again(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    process_import(engine, job["id"], "user-1")

    with pytest.raises(ImportStateError):
        process_import(engine, job["id"], "user-1")


def test_reprocessing_keeps_reviewed_failures_of_the_earlier_run(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    process_import(engine, job["id"], "user-1")
    reviewed = list_failures(engine, job["id"], error_type="validation_failed")[0][0]
    apply_review_action(engine, job["id"], reviewed["id"], "ignore", actor_id="reviewer", note="zero amount is fine")
    update_import_job(engine, job["id"], status="failed")

    summary = process_import(engine, job["id"], "user-1")

    assert (summary.processed_rows, summary.failed_rows, summary.skipped_rows) == (0, 2, 4)
    kept = get_failure(engine, job["id"], reviewed["id"])
    assert kept["status"] == "ignored"
    assert kept["review_notes"] == "zero amount is fine"
    assert kept["attempt"] == 1
    assert list_failures(engine, job["id"])[1] == 10
    assert list_failures(engine, job["id"], attempt=1)[1] == 4
    assert list_failures(engine, job["id"], attempt=2)[1] == 6
    assert get_import_job(engine, job["id"])["metadata"]["failure_attempt"] == 2


def test_unconfigured_job_cannot_be_processed(engine):
    job = start_import(engine, user_id="user-1", content=csv_bytes(*CLEAN_STATEMENT), filename="statement.csv")

    with pytest.raises(ImportStateError):
        process_import(engine, job["id"], "user-1")


def test_preview_writes_nothing(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)

    rows = preview_import(engine, job["id"], "user-1", rows=4)

    assert [row["status"] for row in rows] == ["success", "success", "skipped", "failed"]
    assert rows[0]["data"]["amount"] == "-12.50"
    assert rows[3]["error_type"] == "parsing_error"
    assert _count(engine, transactions) == 0
    assert get_import_job(engine, job["id"])["status"] == "pending"


def test_preview_is_capped(engine, configured_import):
    job = configured_import(MIXED_STATEMENT)
    rows = preview_import(engine, job["id"], "user-1", rows=50, config=Settings(preview_rows=3))
    assert len(rows) == 3


def test_revert_removes_transactions_and_is_idempotent(engine, configured_import):
    job = configured_import(CLEAN_STATEMENT)
    process_import(engine, job["id"], "user-1")

    reverted = revert_import_job(engine, get_import_job(engine, job["id"]))

    assert reverted["status"] == "reverted"
    assert (reverted["total_rows"], reverted["processed_rows"]) == (2, 0)
    assert _count(engine, transactions) == 0
    assert _count(engine, transaction_fingerprints) == 0
    assert revert_import_job(engine, reverted)["status"] == "reverted"

    again = configured_import(CLEAN_STATEMENT)
    assert process_import(engine, again["id"], "user-1").status is ImportStatus.COMPLETED


def test_pending_import_cannot_be_reverted(engine, configured_import):
    job = configured_import(CLEAN_STATEMENT)
    with pytest.raises(ImportStateError):
        revert_import_job(engine, job)


@pytest.mark.parametrize(
    "total,processed,failed,skipped,expected",
    [
        (0, 0, 0, 0, ImportStatus.COMPLETED),
        (10, 10, 0, 0, ImportStatus.COMPLETED),
        (10, 0, 10, 0, ImportStatus.FAILED),
        (10, 9, 1, 0, ImportStatus.PARTIALLY_FAILED),
        (11, 10, 0, 1, ImportStatus.COMPLETED_SKIPPED_DUPLICATES),
        (13, 10, 0, 3, ImportStatus.PARTIALLY_FAILED),
        (2, 0, 0, 2, ImportStatus.PARTIALLY_FAILED),
    ],
)
def test_status_derivation(total, processed, failed, skipped, expected):
    assert derive_import_status(total, processed, failed, skipped) is expected
