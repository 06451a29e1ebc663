from sqlalchemy import func, select

from bankimport.console import build_parser, main
from bankimport.db.tables import transactions
from bankimport.domain.imports.jobs import list_import_jobs
from bankimport.domain.imports.saved_mappings import find_mapping_by_name, save_mapping
from tests.utils.statements import CLEAN_STATEMENT, MIXED_STATEMENT


def _transaction_count(engine):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(transactions)).scalar()


def test_parser_reads_import_options():
    args = build_parser().parse_args(["import", "statement.csv", "--user", "42", "--preview", "--rows", "3"])
    assert args.command == "import"
    assert args.preview is True
    assert args.rows == 3


def test_import_with_detected_mapping(engine, write_csv):
    path = write_csv(CLEAN_STATEMENT)

    assert main(["import", path, "--user", "user-1"], engine=engine) == 0

    assert _transaction_count(engine) == 2
    jobs, _ = list_import_jobs(engine, "user-1")
    assert jobs[0]["status"] == "completed"
    assert jobs[0]["date_format"] == "Y-m-d"


def test_partially_failed_import_still_exits_zero(engine, write_csv):
    path = write_csv(MIXED_STATEMENT)
    assert main(["import", path, "--user", "user-1", "--date-format", "Y-m-d"], engine=engine) == 0
    assert _transaction_count(engine) == 2


def test_preview_writes_nothing(engine, write_csv):
    path = write_csv(CLEAN_STATEMENT)

    assert main(["import", path, "--user", "user-1", "--preview"], engine=engine) == 0
    assert _transaction_count(engine) == 0


def test_import_with_saved_mapping(engine, write_csv):
    save_mapping(
        engine,
        user_id="user-1",
        name="My bank",
        column_mapping={"booked_date": "Date", "amount": "Amount", "partner": "Partner"},
        currency="CHF",
    )
    path = write_csv(CLEAN_STATEMENT)

    assert main(["import", path, "--user", "user-1", "--mapping", "My bank"], engine=engine) == 0

    jobs, _ = list_import_jobs(engine, "user-1")
    assert jobs[0]["currency"] == "CHF"
    assert find_mapping_by_name(engine, "user-1", "My bank")["last_used_at"] is not None


def test_unknown_mapping_and_missing_file_fail(engine, write_csv, tmp_path):
    path = write_csv(CLEAN_STATEMENT)

    assert main(["import", path, "--user", "user-1", "--mapping", "Nope"], engine=engine) == 1
    assert main(["import", str(tmp_path / "missing.csv"), "--user", "user-1"], engine=engine) == 1
