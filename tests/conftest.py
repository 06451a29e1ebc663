"""
Pytest configuration and fixtures for the bank import tests.

Every test gets its own in-memory SQLite database with the import tables
created, and uploads are written to a temporary directory.
"""

import os

# The app must not bootstrap the production database when tests import it.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from bankimport.core.config import settings
from bankimport.db.tables import create_tables
from bankimport.domain.imports.jobs import configure_import_job
from bankimport.domain.imports.uploads import start_import
from tests.utils.statements import csv_bytes


@pytest.fixture(scope="session", autouse=True)
def announce_test_database():
    print("\n" + "=" * 80)
    print("PYTEST SETUP: using in-memory SQLite databases for the import tables")
    print("=" * 80 + "\n")
    yield


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    target = tmp_path / "uploads"
    monkeypatch.setattr(settings, "upload_dir", str(target))
    return target


@pytest.fixture
def write_csv(tmp_path):
    """Write lines to a CSV file and return its path."""
    def _write(lines, name="statement.csv", encoding="utf-8"):
        path = tmp_path / name
        path.write_bytes(("\n".join(lines) + "\n").encode(encoding))
        return str(path)
    return _write


@pytest.fixture
def configured_import(engine):
    """
    Upload CSV lines and configure the job with the detected mapping.

    Returns the configured job dict.
    """
    def _create(lines, user_id="user-1", date_format="Y-m-d", amount_format="1,234.56", **formats):
        job = start_import(engine, user_id=user_id, content=csv_bytes(*lines), filename="statement.csv")
        job, _ = configure_import_job(
            engine,
            job,
            column_mapping=dict(job["metadata"]["detected_mapping"]),
            date_format=date_format,
            amount_format=amount_format,
            currency=formats.pop("currency", "EUR"),
            **formats,
        )
        return job
    return _create
